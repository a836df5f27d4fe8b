"""
Property-based tests.

Invariants checked over generated inputs:
- Proration never exceeds the full amount and never goes negative.
- Full containment returns the exact amount under both methods.
- Period keys survive a shift and its inverse.
- Across any sequence of payment attempts the invoice is never over-paid
  and paid + balance always equals the total.
"""

from datetime import date, timedelta
from decimal import Decimal

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from billing_kernel.domain.money import ZERO
from billing_kernel.domain.periods import resolve_period, shift_period_key
from billing_kernel.domain.proration import get_calculator
from billing_kernel.domain.types import InvoiceStatus, PaymentMode, ProrationMethod

amounts = st.decimals(
    min_value=Decimal("0"), max_value=Decimal("1000000"), places=2, allow_nan=False
)
methods = st.sampled_from(list(ProrationMethod))
month_keys = st.builds(
    lambda year, month: f"{year:04d}-{month:02d}",
    st.integers(min_value=2000, max_value=2099),
    st.integers(min_value=1, max_value=12),
)


@st.composite
def active_windows(draw):
    """A period plus an arbitrary (possibly open, possibly disjoint) window."""
    period = resolve_period(draw(month_keys), draw(st.integers(min_value=1, max_value=28)))
    offset = st.integers(min_value=-60, max_value=60)
    start = draw(st.none() | offset.map(lambda d: period.start + timedelta(days=d)))
    end = draw(st.none() | offset.map(lambda d: period.end + timedelta(days=d)))
    if start is not None and end is not None and end < start:
        start, end = end, start
    return period, start, end


class TestProrationProperties:

    @given(amount=amounts, method=methods, window=active_windows())
    def test_bounded_by_full_amount(self, amount, method, window):
        period, start, end = window
        result = get_calculator(method).prorate_amount(amount, period.start, period.end, start, end)
        assert ZERO <= result <= amount
        assert result == result.quantize(Decimal("0.01"))

    @given(amount=amounts, method=methods, key=month_keys)
    def test_full_containment_is_exact(self, amount, method, key):
        period = resolve_period(key)
        before = period.start - timedelta(days=1)
        assert get_calculator(method).prorate_amount(amount, period.start, period.end, before, None) == amount

    @given(amount=amounts, window=active_windows())
    def test_methods_agree_on_zero_overlap(self, amount, window):
        period, start, end = window
        if start is not None and start > period.end or end is not None and end < period.start:
            results = {
                get_calculator(m).prorate_amount(amount, period.start, period.end, start, end)
                for m in ProrationMethod
            }
            assert results == {ZERO}


class TestPeriodKeyProperties:

    @given(key=month_keys, delta=st.integers(min_value=-240, max_value=240))
    def test_shift_round_trip(self, key, delta):
        assert shift_period_key(shift_period_key(key, delta), -delta) == key

    @given(key=month_keys, billing_day=st.integers(min_value=1, max_value=28))
    def test_period_is_one_month_long(self, key, billing_day):
        period = resolve_period(key, billing_day)
        assert period.start.day == billing_day
        assert 28 <= (period.end - period.start).days + 1 <= 31
        assert period.end + timedelta(days=1) == resolve_period(shift_period_key(key, 1), billing_day).start


payment_sequences = st.lists(
    st.decimals(min_value=Decimal("0.01"), max_value=Decimal("700.00"), places=2, allow_nan=False),
    min_size=1,
    max_size=6,
)


class TestPaymentSequences:

    @settings(
        max_examples=25,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(payments=payment_sequences)
    def test_never_overpaid(self, engine, issued_invoice, payments):
        invoice_id = issued_invoice(rent="1000.00", start_date=date(2024, 3, 1))
        total = Decimal("1000.00")
        accepted = ZERO

        for amount in payments:
            result = engine.apply_payment(invoice_id, amount, PaymentMode.CASH)
            if accepted + amount <= total:
                assert result.ok, result.message
                accepted += amount
            else:
                assert result.error_code in ("OVERPAYMENT", "INVOICE_NOT_PAYABLE")

        invoice = engine.get_invoice(invoice_id).unwrap()
        assert invoice.paid_amount == accepted
        assert invoice.paid_amount + invoice.balance_amount == invoice.total_amount
        if accepted == total:
            assert invoice.status is InvoiceStatus.PAID
        elif accepted > ZERO:
            assert invoice.status is InvoiceStatus.PARTIALLY_PAID
        else:
            assert invoice.status is InvoiceStatus.ISSUED
