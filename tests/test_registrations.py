"""
Unit tests for registration availability and spot reservations.
"""

from datetime import datetime, timedelta

import pytest

from league_registry_api.app.core.db import timestamp
from league_registry_api.app.core.exceptions import CapacityError, ConflictError
from league_registry_api.app.services.registration_service import (
    category_registration_count,
    get_registration_status,
    is_registration_available,
)
from league_registry_api.app.services.reservation_service import ReservationService

NOW = datetime(2025, 9, 15, 12, 0, 0)


def _registration(**overrides):
    registration = {
        "is_active": 1,
        "type": "team",
        "end_date": None,
        "registration_end_at": None,
        "presale_start_at": None,
        "regular_start_at": None,
        "presale_code": None,
    }
    registration.update(overrides)
    return registration


class TestRegistrationStatus:
    """Status derived from the timing columns."""

    @pytest.mark.unit
    def test_inactive_is_draft(self) -> None:
        assert get_registration_status(_registration(is_active=0), NOW) == "draft"

    @pytest.mark.unit
    def test_no_timing_is_open(self) -> None:
        assert get_registration_status(_registration(), NOW) == "open"

    @pytest.mark.unit
    def test_event_after_end_date_is_past(self) -> None:
        registration = _registration(type="event", end_date=NOW - timedelta(days=1))
        assert get_registration_status(registration, NOW) == "past"

    @pytest.mark.unit
    def test_team_after_end_date_is_not_past(self) -> None:
        registration = _registration(type="team", end_date=NOW - timedelta(days=1))
        assert get_registration_status(registration, NOW) == "open"

    @pytest.mark.unit
    def test_closed_registration_is_expired(self) -> None:
        registration = _registration(registration_end_at=NOW - timedelta(hours=1))
        assert get_registration_status(registration, NOW) == "expired"

    @pytest.mark.unit
    def test_before_presale_is_coming_soon(self) -> None:
        registration = _registration(
            presale_start_at=NOW + timedelta(days=1), regular_start_at=NOW + timedelta(days=3)
        )
        assert get_registration_status(registration, NOW) == "coming_soon"

    @pytest.mark.unit
    def test_between_presale_and_regular_is_presale(self) -> None:
        registration = _registration(
            presale_start_at=NOW - timedelta(days=1), regular_start_at=NOW + timedelta(days=1)
        )
        assert get_registration_status(registration, NOW) == "presale"

    @pytest.mark.unit
    def test_timestamps_stored_as_text_are_parsed(self) -> None:
        registration = _registration(registration_end_at="2025-09-14 23:59:59")
        assert get_registration_status(registration, NOW) == "expired"


class TestAvailability:
    """Presale codes gate checkout during presale."""

    @pytest.mark.unit
    def test_presale_requires_matching_code(self) -> None:
        registration = _registration(
            presale_start_at=NOW - timedelta(days=1),
            regular_start_at=NOW + timedelta(days=1),
            presale_code="EarlyBird",
        )
        assert is_registration_available(registration, "earlybird", NOW) is True
        assert is_registration_available(registration, " EARLYBIRD ", NOW) is True
        assert is_registration_available(registration, "wrong", NOW) is False
        assert is_registration_available(registration, None, NOW) is False

    @pytest.mark.unit
    def test_open_needs_no_code(self) -> None:
        assert is_registration_available(_registration(), None, NOW) is True

    @pytest.mark.unit
    def test_coming_soon_is_not_available(self) -> None:
        registration = _registration(regular_start_at=NOW + timedelta(days=2))
        assert is_registration_available(registration, None, NOW) is False


class TestReservations:
    """Holds on capacity-limited categories."""

    @pytest.mark.unit
    def test_reserve_creates_processing_hold(self, make_user, make_registration, make_category) -> None:
        user = make_user()
        registration_id = make_registration()
        category_id = make_category(registration_id, max_capacity=10)

        row = ReservationService.reserve(user["id"], registration_id, category_id, 10000, 10000, max_capacity=10)

        assert row["payment_status"] == "processing"
        assert row["processing_expires_at"] > timestamp()
        assert category_registration_count(category_id) == 1

    @pytest.mark.unit
    def test_full_category_raises_capacity_error(
        self, make_user, make_registration, make_category, make_paid_registration
    ) -> None:
        registration_id = make_registration()
        category_id = make_category(registration_id, max_capacity=1)
        make_paid_registration(make_user()["id"], registration_id, category_id)

        with pytest.raises(CapacityError) as exc_info:
            ReservationService.reserve(make_user()["id"], registration_id, category_id, 10000, 10000, max_capacity=1)
        assert exc_info.value.should_show_waitlist is True

    @pytest.mark.unit
    def test_second_hold_for_same_member_conflicts(self, make_user, make_registration, make_category) -> None:
        user = make_user()
        registration_id = make_registration()
        category_id = make_category(registration_id)
        ReservationService.reserve(user["id"], registration_id, category_id, 10000, 10000)

        with pytest.raises(ConflictError, match="already in progress"):
            ReservationService.reserve(user["id"], registration_id, category_id, 10000, 10000)

    @pytest.mark.unit
    def test_paid_member_cannot_reserve_again(
        self, make_user, make_registration, make_category, make_paid_registration
    ) -> None:
        user = make_user()
        registration_id = make_registration()
        category_id = make_category(registration_id)
        make_paid_registration(user["id"], registration_id, category_id)

        with pytest.raises(ConflictError, match="already registered"):
            ReservationService.reserve(user["id"], registration_id, category_id, 10000, 10000)

    @pytest.mark.unit
    def test_expired_hold_frees_the_spot(self, make_user, make_registration, make_category, insert_row) -> None:
        registration_id = make_registration()
        category_id = make_category(registration_id, max_capacity=1)
        insert_row(
            "user_registrations",
            user_id=make_user()["id"],
            registration_id=registration_id,
            registration_category_id=category_id,
            payment_status="processing",
            processing_expires_at=timestamp(minutes=-1),
        )

        assert category_registration_count(category_id) == 0
        row = ReservationService.reserve(make_user()["id"], registration_id, category_id, 10000, 10000, max_capacity=1)
        assert row["id"]

    @pytest.mark.unit
    def test_expired_own_hold_is_replaced(self, make_user, make_registration, make_category, insert_row) -> None:
        user = make_user()
        registration_id = make_registration()
        category_id = make_category(registration_id)
        stale_id = insert_row(
            "user_registrations",
            user_id=user["id"],
            registration_id=registration_id,
            registration_category_id=category_id,
            payment_status="processing",
            processing_expires_at=timestamp(minutes=-1),
        )

        row = ReservationService.reserve(user["id"], registration_id, category_id, 10000, 10000)

        assert row["id"] != stale_id

    @pytest.mark.unit
    def test_mark_paid_is_idempotent(self, make_user, make_registration, make_category) -> None:
        user = make_user()
        registration_id = make_registration()
        category_id = make_category(registration_id)
        row = ReservationService.reserve(user["id"], registration_id, category_id, 10000, 10000)

        assert ReservationService.mark_paid(row["id"], None, 10000) is True
        assert ReservationService.mark_paid(row["id"], None, 10000) is False
        assert ReservationService.release(row["id"]) is False

    @pytest.mark.unit
    def test_check_duplicate(self, make_user, make_registration, make_category) -> None:
        user = make_user()
        registration_id = make_registration()
        category_id = make_category(registration_id)

        assert ReservationService.check_duplicate(user["id"], registration_id).is_registered is False
        row = ReservationService.reserve(user["id"], registration_id, category_id, 10000, 10000)
        held = ReservationService.check_duplicate(user["id"], registration_id)
        assert held.has_active_hold is True
        assert held.is_registered is False

        ReservationService.mark_paid(row["id"], None, 10000)
        assert ReservationService.check_duplicate(user["id"], registration_id).is_registered is True

    @pytest.mark.unit
    def test_cleanup_removes_only_expired_holds(self, make_user, make_registration, make_category, insert_row, query) -> None:
        registration_id = make_registration()
        category_id = make_category(registration_id)
        insert_row(
            "user_registrations",
            user_id=make_user()["id"],
            registration_id=registration_id,
            registration_category_id=category_id,
            payment_status="processing",
            processing_expires_at=timestamp(minutes=-10),
        )
        ReservationService.reserve(make_user()["id"], registration_id, category_id, 10000, 10000)

        assert ReservationService.cleanup_expired() == 1
        assert len(query("SELECT id FROM user_registrations")) == 1
