"""Version 1 of the League Registry API."""
