"""
Unit tests for discount validation and the seasonal savings cap.
"""

import pytest

from league_registry_api.app.core.db import timestamp
from league_registry_api.app.services.discount_service import DiscountService, format_cents, percent_of


class TestDiscountMath:
    """Rounding and formatting helpers."""

    @pytest.mark.unit
    def test_percent_of_rounds_half_up(self) -> None:
        assert percent_of(10000, 25) == 2500
        assert percent_of(999, 25) == 250
        assert percent_of(1, 50) == 1

    @pytest.mark.unit
    def test_format_cents(self) -> None:
        assert format_cents(123456) == "$1,234.56"
        assert format_cents(0) == "$0.00"


class TestValidateCode:
    """Checks performed before a code is applied to a price."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_code_applies_percentage(self, make_user, make_season, make_discount) -> None:
        user = make_user()
        season_id = make_season()
        make_discount(code="PRIDE25", percentage=25)

        result = await DiscountService.validate_code("pride25", user["id"], season_id, 10000)

        assert result.is_valid is True
        assert result.discount_amount == 2500
        assert result.final_amount == 7500
        assert result.is_partial_discount is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_code_is_rejected(self, make_user, make_season) -> None:
        user = make_user()
        result = await DiscountService.validate_code("NOPE", user["id"], make_season(), 10000)

        assert result.is_valid is False
        assert result.final_amount == 10000
        assert result.message == "Invalid discount code"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_code_is_rejected(self, make_user, make_season, make_discount) -> None:
        user = make_user()
        make_discount(code="OLD10", percentage=10, is_active=0)

        result = await DiscountService.validate_code("OLD10", user["id"], make_season(), 10000)

        assert result.is_valid is False
        assert "no longer active" in result.message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_code_is_rejected(self, make_user, make_season, make_discount) -> None:
        user = make_user()
        make_discount(code="SUMMER", percentage=10, valid_until=timestamp(days=-1))

        result = await DiscountService.validate_code("SUMMER", user["id"], make_season(), 10000)

        assert result.is_valid is False
        assert "expired" in result.message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_usage_limit_per_user(self, make_user, make_season, make_discount, insert_row, query) -> None:
        user = make_user()
        season_id = make_season()
        code_id = make_discount(code="ONCE", percentage=10, usage_limit=1)
        category_id = query("SELECT discount_category_id FROM discount_codes WHERE id = ?", (code_id,))[0][
            "discount_category_id"
        ]
        insert_row(
            "discount_usage",
            user_id=user["id"],
            discount_code_id=code_id,
            discount_category_id=category_id,
            season_id=season_id,
            amount_saved=500,
        )

        result = await DiscountService.validate_code("ONCE", user["id"], season_id, 10000)

        assert result.is_valid is False
        assert "already used" in result.message


class TestSeasonalLimit:
    """The per-category cap on what one member saves in a season."""

    def _record(self, insert_row, query, user_id, code_id, season_id, amount):
        category_id = query("SELECT discount_category_id FROM discount_codes WHERE id = ?", (code_id,))[0][
            "discount_category_id"
        ]
        insert_row(
            "discount_usage",
            user_id=user_id,
            discount_code_id=code_id,
            discount_category_id=category_id,
            season_id=season_id,
            amount_saved=amount,
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_discount_when_cap_nearly_used(
        self, make_user, make_season, make_discount, insert_row, query
    ) -> None:
        user = make_user()
        season_id = make_season()
        code_id = make_discount(code="SCHOLAR", percentage=25, cap=3000)
        self._record(insert_row, query, user["id"], code_id, season_id, 2000)

        result = await DiscountService.validate_code("SCHOLAR", user["id"], season_id, 10000)

        assert result.is_valid is True
        assert result.discount_amount == 1000
        assert result.final_amount == 9000
        assert result.is_partial_discount is True
        assert "$10.00" in result.message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_discount_once_cap_reached(self, make_user, make_season, make_discount, insert_row, query) -> None:
        user = make_user()
        season_id = make_season()
        code_id = make_discount(code="SCHOLAR", percentage=25, cap=3000)
        self._record(insert_row, query, user["id"], code_id, season_id, 3000)

        code = DiscountService.get_code_row(code_id)
        limit = await DiscountService.check_seasonal_discount_limit(user["id"], code, season_id, 2500)

        assert limit.final_amount == 0
        assert limit.seasonal_usage == 3000
        assert "season limit" in limit.message

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_usage_in_other_season_does_not_count(
        self, make_user, make_season, make_discount, insert_row, query
    ) -> None:
        user = make_user()
        last_season = make_season(name="Spring/Summer", type="spring_summer")
        this_season = make_season()
        code_id = make_discount(code="SCHOLAR", percentage=25, cap=3000)
        self._record(insert_row, query, user["id"], code_id, last_season, 3000)

        code = DiscountService.get_code_row(code_id)
        limit = await DiscountService.check_seasonal_discount_limit(user["id"], code, this_season, 2500)

        assert limit.final_amount == 2500
        assert limit.is_partial_discount is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_record_usage_once_per_registration(self, make_user, make_season, make_discount, query) -> None:
        user = make_user()
        season_id = make_season()
        code_id = make_discount(code="PRIDE25", percentage=25)

        first = await DiscountService.record_usage(user["id"], code_id, season_id, 2500, registration_id=7)
        second = await DiscountService.record_usage(user["id"], code_id, season_id, 2500, registration_id=7)
        repeated = await DiscountService.record_usage(
            user["id"], code_id, season_id, 500, registration_id=7, once_per_registration=False
        )

        assert (first, second, repeated) == (True, False, True)
        rows = query("SELECT amount_saved FROM discount_usage WHERE user_id = ? ORDER BY id", (user["id"],))
        assert [r["amount_saved"] for r in rows] == [2500, 500]
