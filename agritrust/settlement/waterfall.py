"""
Percentage waterfall.

    platform_fee      = revenue × platform_fee_percentage
    remainder         = revenue − platform_fee
    operator_payout   = remainder × operator_share_percentage
    contributor_pool  = remainder − operator_payout
    payout_i          = contributor_pool × share_i

Intermediate values keep full Decimal precision. Only the line items paid
out (platform fee, operator payout, each contributor payout) are rounded,
half-even, to `precision` fractional digits. Whatever rounding or an empty
contributor list leaves unallocated is reported as leftover.

Worked example, 58,500 at fee 0.20 and operator share 0.40:
    fee 11,700 / remainder 46,800 / operator 18,720 / pool 28,080
"""

from decimal import Decimal
from typing import Iterable, List, Mapping, Sequence, Tuple, Union

from agritrust.core.exceptions import ConfigurationError
from agritrust.core.money import DEFAULT_PRECISION, Money, Number, format_amount, to_decimal
from agritrust.settlement.models import ContributorPayout, ContributorShare, WaterfallResult

SHARE_SUM_TOLERANCE = Decimal("0.000001")


def compute_waterfall(
    verified_revenue:          Money,
    platform_fee_percentage:   Number,
    operator_share_percentage: Number,
    contributor_shares:        Sequence[ContributorShare] = (),
    precision:                 int = DEFAULT_PRECISION,
) -> WaterfallResult:
    """
    Split verified revenue. Pure: no I/O, no state.

    Raises:
        ConfigurationError  percentage outside [0, 1], negative revenue,
                            share sum not 1 within 1e-6, bad precision
    """
    if not isinstance(verified_revenue, Money):
        raise ConfigurationError(
            f"verified_revenue must be Money, got {type(verified_revenue).__name__}"
        )
    if verified_revenue.amount < 0:
        raise ConfigurationError(
            "revenue must not be negative", {"revenue": str(verified_revenue)}
        )
    if not isinstance(precision, int) or isinstance(precision, bool) or precision < 0:
        raise ConfigurationError(f"precision must be a non-negative int, got {precision!r}")

    fee_pct      = _percentage(platform_fee_percentage, "platform_fee_percentage")
    operator_pct = _percentage(operator_share_percentage, "operator_share_percentage")
    shares       = validate_shares(contributor_shares)

    revenue = verified_revenue
    asset   = revenue.asset

    fee_exact       = revenue.times(fee_pct)
    remainder_exact = revenue - fee_exact
    operator_exact  = remainder_exact.times(operator_pct)
    pool_exact      = remainder_exact - operator_exact

    platform_fee    = fee_exact.quantize(precision)
    operator_payout = operator_exact.quantize(precision)
    payouts = tuple(
        ContributorPayout(
            address=          share.address,
            share_percentage= share.share_percentage,
            amount=           pool_exact.times(share.share_percentage).quantize(precision),
        )
        for share in shares
    )

    allocated = platform_fee + operator_payout
    for payout in payouts:
        allocated = allocated + payout.amount

    return WaterfallResult(
        revenue=                   revenue,
        platform_fee_percentage=   fee_pct,
        operator_share_percentage= operator_pct,
        platform_fee=              platform_fee,
        remainder=                 remainder_exact.quantize(precision),
        operator_payout=           operator_payout,
        contributor_pool=          pool_exact.quantize(precision),
        contributor_payouts=       payouts,
        leftover=                  Money(revenue.amount - allocated.amount, asset),
        precision=                 precision,
    )


def validate_shares(shares: Iterable[ContributorShare]) -> List[ContributorShare]:
    """Every share positive and, if any are given, summing to 1 within 1e-6."""
    shares = list(shares)
    for share in shares:
        if not isinstance(share, ContributorShare):
            raise ConfigurationError(
                f"expected ContributorShare, got {type(share).__name__}"
            )
    if not shares:
        return shares

    total = sum((s.share_percentage for s in shares), Decimal(0))
    if abs(total - 1) > SHARE_SUM_TOLERANCE:
        raise ConfigurationError(
            "contributor shares must sum to 1",
            {"sum": format_amount(total), "tolerance": format_amount(SHARE_SUM_TOLERANCE)},
        )
    return shares


def shares_from_contributions(
    contributions: Union[Mapping[str, Money], Sequence[Tuple[str, Money]]],
) -> List[ContributorShare]:
    """
    Derive shares from contributed capital: share_i = contributed_i / Σ contributed.

    Order of the input is kept; it becomes the payout order.
    """
    items = list(contributions.items()) if isinstance(contributions, Mapping) else list(contributions)
    if not items:
        return []

    asset = items[0][1].asset
    total = Money.zero(asset)
    for address, amount in items:
        if not isinstance(amount, Money):
            raise ConfigurationError(
                f"contribution of {address} must be Money, got {type(amount).__name__}"
            )
        if not amount.is_positive():
            raise ConfigurationError(
                "contributed amount must be positive",
                {"address": address, "amount": str(amount)},
            )
        total = total + amount

    return [
        ContributorShare(
            address=            address,
            share_percentage=   amount.amount / total.amount,
            contributed_amount= amount,
        )
        for address, amount in items
    ]


def profit_distribution_preview(result: WaterfallResult) -> dict:
    """Totals per stakeholder group, as attached to a notarized proof."""
    return {
        "investorsTotal": format_amount(result.contributor_pool.amount),
        "farmerTotal":    format_amount(result.operator_payout.amount),
        "platformTotal":  format_amount(result.platform_fee.amount),
        "currency":       result.asset,
    }


def _percentage(value: Number, field: str) -> Decimal:
    pct = to_decimal(value, field)
    if pct < 0 or pct > 1:
        raise ConfigurationError(
            f"{field} must be within [0, 1]", {field: format_amount(pct)}
        )
    return pct
