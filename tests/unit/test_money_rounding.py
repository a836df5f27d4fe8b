"""Money helpers and the Result type."""

from decimal import Decimal

import pytest

from billing_kernel.domain.money import round_money, to_decimal
from billing_kernel.domain.result import Result
from billing_kernel.exceptions import InvalidAmountError, InvoiceNotFoundError, OverpaymentError


class TestRoundMoney:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("2.345", "2.34"),
            ("2.355", "2.36"),
            ("2.3450001", "2.35"),
            ("-2.345", "-2.34"),
            ("10", "10.00"),
        ],
    )
    def test_bankers_rounding(self, raw, expected):
        assert round_money(Decimal(raw)) == Decimal(expected)

    def test_to_decimal_accepts_str_and_int(self):
        assert to_decimal("12.50") == Decimal("12.50")
        assert to_decimal(3) == Decimal(3)

    def test_to_decimal_refuses_float(self):
        with pytest.raises(InvalidAmountError):
            to_decimal(0.1)

    @pytest.mark.parametrize("raw", ["abc", "", None, "NaN", "Infinity", "1,000"])
    def test_to_decimal_refuses_non_numbers(self, raw):
        with pytest.raises(InvalidAmountError) as exc_info:
            to_decimal(raw)
        assert exc_info.value.code == "INVALID_AMOUNT"


class TestResult:

    def test_success(self):
        result = Result.success(42)
        assert result.ok
        assert result.unwrap() == 42
        assert result.error_code is None
        assert result.message is None

    def test_failure_carries_code_and_message(self):
        error = OverpaymentError("inv-1", Decimal("600.00"), Decimal("500.00"))
        result = Result.failure(error)
        assert not result.ok
        assert result.error_code == "OVERPAYMENT"
        assert "600.00" in result.message

    def test_unwrap_reraises(self):
        result = Result.failure(InvoiceNotFoundError("missing"))
        with pytest.raises(InvoiceNotFoundError):
            result.unwrap()
