"""
Debt interest math. Balances and payments are in cents, rates are the annual
percentages stored on the debt row.
"""
import math
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Any, List, Tuple, Optional

from dateutil.relativedelta import relativedelta

from homeledger.exceptions import ValidationError

# Projection cap when the payment never outruns the interest
NEVER_PAID_OFF_MONTHS = 999
PAYOFF_METHODS = ('snowball', 'avalanche')


def period_rate(debt: Dict[str, Any]) -> Decimal:
    """
    Fraction of the balance charged as interest for one payment period.

    Installment loans use simple monthly interest. Revolving credit follows
    its compounding frequency: daily rate times the billing cycle length,
    a third of the quarterly rate, or a twelfth of the annual rate.
    """
    if debt.get('interest_type') == 'none':
        return Decimal(0)

    annual_rate = Decimal(str(debt.get('interest_rate') or 0)) / 100
    if annual_rate == 0:
        return Decimal(0)

    if debt.get('loan_type') == 'installment':
        return annual_rate / 12

    frequency = debt.get('compounding_frequency') or 'monthly'
    if frequency == 'daily':
        return annual_rate / 365 * int(debt.get('billing_cycle_days') or 30)
    if frequency == 'quarterly':
        return annual_rate / 4 / 3
    return annual_rate / 12


def period_interest_cents(balance_cents: int, debt: Dict[str, Any]) -> int:
    """Interest accrued on balance_cents over one period, rounded half up to a cent."""
    if balance_cents <= 0:
        return 0
    interest = Decimal(balance_cents) * period_rate(debt)
    return int(interest.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def split_payment(payment_cents: int, balance_cents: int, debt: Dict[str, Any]) -> Tuple[int, int]:
    """
    Split a payment into principal and interest.

    Interest for the period is paid first; the rest is principal, capped at
    the outstanding balance.

    Returns:
        Tuple of (principal_cents, interest_cents)

    Examples:
        >>> split_payment(50000, 1000000, {'interest_rate': 12, 'loan_type': 'installment'})
        (40000, 10000)
    """
    interest = min(period_interest_cents(balance_cents, debt), payment_cents)
    principal = min(payment_cents - interest, max(balance_cents, 0))
    return principal, interest


def project_payoff(debt: Dict[str, Any], today: Optional[date] = None) -> Dict[str, Any]:
    """
    Estimate months to payoff from the minimum payment.

    Uses the amortization formula n = log(P / (P - B*r)) / log(1 + r),
    falling back to a straight division when there is no interest.
    """
    balance = debt['remaining_balance_cents']
    payment = debt.get('minimum_payment_cents') or 0
    rate = float(period_rate(debt))

    if balance <= 0:
        return {
            'debt_id': debt['id'],
            'is_paid_off': True,
            'months_remaining': 0,
            'payoff_date': None,
            'total_interest_remaining_cents': 0,
        }

    if payment <= 0:
        months = None
        total_interest = None
    elif rate == 0:
        months = math.ceil(balance / payment)
        total_interest = 0
    elif payment <= balance * rate:
        months = NEVER_PAID_OFF_MONTHS
        total_interest = None
    else:
        months = math.ceil(math.log(payment / (payment - balance * rate)) / math.log(1 + rate))
        total_interest = max(payment * months - balance, 0)

    payoff_date = None
    if months is not None and months != NEVER_PAID_OFF_MONTHS:
        payoff_date = ((today or date.today()) + relativedelta(months=months)).isoformat()

    return {
        'debt_id': debt['id'],
        'is_paid_off': False,
        'months_remaining': months,
        'payoff_date': payoff_date,
        'total_interest_remaining_cents': total_interest,
        'remaining_balance_cents': balance,
        'monthly_payment_cents': payment,
    }


def order_debts(debts: List[Dict[str, Any]], method: str) -> List[Dict[str, Any]]:
    """
    Order debts for extra payments.

    Snowball goes smallest balance first, avalanche highest rate first.
    Ties fall back to the other criterion, then to the debt id.
    """
    if method == 'snowball':
        return sorted(debts, key=lambda d: (d['remaining_balance_cents'], -period_rate(d), d['id']))
    if method == 'avalanche':
        return sorted(debts, key=lambda d: (-period_rate(d), d['remaining_balance_cents'], d['id']))
    raise ValidationError(f"Invalid payoff method: {method}. Must be one of {', '.join(PAYOFF_METHODS)}")


def simulate_payoff(debts: List[Dict[str, Any]], extra_payment_cents: int = 0,
                    method: str = 'avalanche', today: Optional[date] = None) -> Dict[str, Any]:
    """
    Simulate paying off several debts month by month.

    Every month each open debt accrues one period of interest and receives its
    minimum payment. The rest of the monthly budget (all minimums plus
    extra_payment_cents) goes to the first open debt in payoff order, and
    whatever that debt does not need rolls on to the next one. A paid off
    debt's minimum stays in the budget.

    Args:
        debts: Debt rows with remaining_balance_cents, minimum_payment_cents
            and the interest columns
        extra_payment_cents: Monthly amount on top of the minimums
        method: 'snowball' or 'avalanche'
        today: Start of the simulation, for payoff dates

    Returns:
        Dictionary with the totals and the per-debt payoff_order

    Raises:
        ValidationError: Unknown method or negative extra payment
    """
    if extra_payment_cents < 0:
        raise ValidationError("Extra payment cannot be negative")

    ordered = [d for d in order_debts(debts, method) if d['remaining_balance_cents'] > 0]
    budget = sum(d.get('minimum_payment_cents') or 0 for d in ordered) + extra_payment_cents
    balances = {d['id']: d['remaining_balance_cents'] for d in ordered}
    interest_paid = {d['id']: 0 for d in ordered}
    paid_off_in: Dict[int, int] = {}

    month = 0
    while len(paid_off_in) < len(ordered) and month < NEVER_PAID_OFF_MONTHS:
        month += 1
        open_debts = [d for d in ordered if d['id'] not in paid_off_in]

        for debt in open_debts:
            interest = period_interest_cents(balances[debt['id']], debt)
            balances[debt['id']] += interest
            interest_paid[debt['id']] += interest

        available = budget
        for debt in open_debts:
            payment = min(debt.get('minimum_payment_cents') or 0, balances[debt['id']], available)
            balances[debt['id']] -= payment
            available -= payment

        for debt in open_debts:
            if available <= 0:
                break
            payment = min(available, balances[debt['id']])
            balances[debt['id']] -= payment
            available -= payment

        for debt in open_debts:
            if balances[debt['id']] <= 0:
                paid_off_in[debt['id']] = month

    start = today or date.today()
    payoff_order = []
    for position, debt in enumerate(ordered, start=1):
        months = paid_off_in.get(debt['id'])
        payoff_order.append({
            'position': position,
            'debt_id': debt['id'],
            'name': debt.get('name'),
            'starting_balance_cents': debt['remaining_balance_cents'],
            'months_to_payoff': months,
            'payoff_date': (start + relativedelta(months=months)).isoformat() if months else None,
            'interest_cents': interest_paid[debt['id']],
        })

    is_payable = len(paid_off_in) == len(ordered)
    if not ordered:
        total_months = 0
    elif is_payable:
        total_months = max(paid_off_in.values())
    else:
        total_months = NEVER_PAID_OFF_MONTHS

    return {
        'method': method,
        'monthly_budget_cents': budget,
        'extra_payment_cents': extra_payment_cents,
        'is_payable': is_payable,
        'total_months': total_months,
        'total_interest_cents': sum(interest_paid.values()),
        'debt_free_date': (start + relativedelta(months=total_months)).isoformat() if is_payable else None,
        'payoff_order': payoff_order,
    }


def compare_payoff_methods(debts: List[Dict[str, Any]], extra_payment_cents: int = 0,
                           today: Optional[date] = None) -> Dict[str, Any]:
    """Run both methods. Avalanche is recommended when it saves interest or time."""
    snowball = simulate_payoff(debts, extra_payment_cents, 'snowball', today)
    avalanche = simulate_payoff(debts, extra_payment_cents, 'avalanche', today)

    time_savings = snowball['total_months'] - avalanche['total_months']
    interest_savings = snowball['total_interest_cents'] - avalanche['total_interest_cents']
    return {
        'snowball': snowball,
        'avalanche': avalanche,
        'time_savings_months': time_savings,
        'interest_savings_cents': interest_savings,
        'recommended_method': 'avalanche' if interest_savings > 0 or time_savings > 0 else 'snowball',
    }
