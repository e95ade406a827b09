from decimal import Decimal, ROUND_HALF_UP

from django.db.models import Sum

ZERO = Decimal('0.00')
CENT = Decimal('0.01')


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value or '0'))


def quantize(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def sum_amount(queryset, field_name='amount') -> Decimal:
    value = queryset.aggregate(total=Sum(field_name)).get('total')
    return quantize(value)


def percentage(part, whole) -> Decimal:
    whole = to_decimal(whole)
    if whole <= 0:
        return ZERO
    return quantize(to_decimal(part) * Decimal('100') / whole)


def distribute_percentages(counts):
    """
    Largest-remainder rounding: percentages (2 dp) for ``counts`` that add up
    to exactly 100.00 whenever the total is positive.
    """
    counts = [int(count) for count in counts]
    total = sum(counts)
    if total <= 0:
        return [ZERO for _ in counts]

    # Work in hundredths of a percent so every unit is 0.01%.
    units = 10000
    raw = [Decimal(count * units) / Decimal(total) for count in counts]
    floors = [int(value) for value in raw]
    shortfall = units - sum(floors)

    order = sorted(range(len(counts)), key=lambda index: (raw[index] - floors[index], counts[index]), reverse=True)
    for index in order[:shortfall]:
        floors[index] += 1

    return [(Decimal(value) / Decimal('100')).quantize(CENT) for value in floors]
