"""
Application package initializer.

The project is organised by domain.  Seasons, memberships,
registrations, payments, waitlists, alternates and the accounting
sync each have a service in ``services`` and a router in
``api/v1/endpoints``.  Versioning is handled by grouping routers under
the ``api/<version>/`` hierarchy.
"""
