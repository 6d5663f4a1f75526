from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.utils import timezone

from .exceptions import ValidationError

CENTS = Decimal('0.01')


def to_money(value, field='amount'):
    """Parse `value` into a 2dp Decimal. Floats go through str() so 0.1 stays 0.10."""
    if value is None or value == '':
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def derive_invoice_status(balance, amount_paid, due_date, base_status='draft', today=None):
    """
    Status of a non-cancelled invoice from its money and due date:

        balance <= 0           -> paid
        amount_paid > 0        -> partially_paid
        today > due_date       -> overdue
        otherwise              -> base_status (draft or sent)
    """
    if balance <= 0:
        return 'paid'
    if amount_paid > 0:
        return 'partially_paid'
    if today is None:
        today = timezone.localdate()
    if due_date is not None and today > due_date:
        return 'overdue'
    return base_status


ONES = [
    '', 'one', 'two', 'three', 'four', 'five', 'six', 'seven', 'eight', 'nine',
    'ten', 'eleven', 'twelve', 'thirteen', 'fourteen', 'fifteen', 'sixteen',
    'seventeen', 'eighteen', 'nineteen',
]
TENS = ['', '', 'twenty', 'thirty', 'forty', 'fifty', 'sixty', 'seventy', 'eighty', 'ninety']
SCALES = ['', 'thousand', 'million', 'billion', 'trillion']
DIGITS = ['zero', 'one', 'two', 'three', 'four', 'five', 'six', 'seven', 'eight', 'nine']


def _chunk_to_words(n):
    """Words for 0 < n < 1000"""
    words = []
    if n >= 100:
        words.extend([ONES[n // 100], 'hundred'])
        n %= 100
    if n >= 20:
        words.append(TENS[n // 10])
        n %= 10
    if n > 0:
        words.append(ONES[n])
    return ' '.join(words)


def number_to_words(value):
    """
    Spell out an amount for printed receipts, e.g. 1250.5 -> 'one thousand two hundred fifty point five zero'.
    Cents are read digit by digit and dropped when zero.
    """
    amount = to_money(value)
    if amount < 0:
        return 'negative ' + number_to_words(-amount)

    integer_part = int(amount)
    cents = int((amount - integer_part) * 100)

    if integer_part == 0:
        words = 'zero'
    else:
        parts = []
        scale = 0
        n = integer_part
        while n > 0:
            chunk = n % 1000
            if chunk:
                if scale >= len(SCALES):
                    raise ValidationError("Amount is too large to spell out")
                chunk_words = _chunk_to_words(chunk)
                if SCALES[scale]:
                    chunk_words = f"{chunk_words} {SCALES[scale]}"
                parts.insert(0, chunk_words)
            n //= 1000
            scale += 1
        words = ' '.join(parts)

    if cents:
        spoken = ' '.join(DIGITS[int(d)] for d in f"{cents:02d}")
        words = f"{words} point {spoken}"
    return words
