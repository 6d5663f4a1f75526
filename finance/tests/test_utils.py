from datetime import date
from decimal import Decimal

from django.test import SimpleTestCase

from finance.exceptions import ValidationError
from finance.utils import derive_invoice_status, number_to_words, to_money


class NumberToWordsTest(SimpleTestCase):

    def test_whole_amounts(self):
        self.assertEqual(number_to_words(0), 'zero')
        self.assertEqual(number_to_words(7), 'seven')
        self.assertEqual(number_to_words(15), 'fifteen')
        self.assertEqual(number_to_words(40), 'forty')
        self.assertEqual(number_to_words(500), 'five hundred')
        self.assertEqual(number_to_words(1001), 'one thousand one')

    def test_scales(self):
        self.assertEqual(
            number_to_words(Decimal('1250000')),
            'one million two hundred fifty thousand'
        )
        self.assertEqual(number_to_words(Decimal('3000000000')), 'three billion')
        self.assertEqual(number_to_words(Decimal('2000000000000')), 'two trillion')

    def test_cents_are_read_digit_by_digit(self):
        self.assertEqual(number_to_words(Decimal('1250.50')), 'one thousand two hundred fifty point five zero')
        self.assertEqual(number_to_words(Decimal('12.05')), 'twelve point zero five')

    def test_zero_cents_are_omitted(self):
        self.assertEqual(number_to_words(Decimal('500.00')), 'five hundred')

    def test_negative(self):
        self.assertEqual(number_to_words(Decimal('-20')), 'negative twenty')


class ToMoneyTest(SimpleTestCase):

    def test_quantizes_to_cents(self):
        self.assertEqual(to_money('10'), Decimal('10.00'))
        self.assertEqual(to_money(0.1), Decimal('0.10'))
        self.assertEqual(to_money('2.005'), Decimal('2.01'))

    def test_rejects_garbage(self):
        for value in (None, '', 'abc', True, 'NaN'):
            with self.assertRaises(ValidationError):
                to_money(value)


class DeriveInvoiceStatusTest(SimpleTestCase):
    due = date(2025, 1, 31)

    def test_paid_when_nothing_left(self):
        self.assertEqual(derive_invoice_status(Decimal('0'), Decimal('100'), self.due), 'paid')

    def test_partially_paid_beats_overdue(self):
        status = derive_invoice_status(Decimal('50'), Decimal('50'), self.due, today=date(2025, 3, 1))
        self.assertEqual(status, 'partially_paid')

    def test_overdue_after_due_date(self):
        status = derive_invoice_status(Decimal('100'), Decimal('0'), self.due, 'sent', today=date(2025, 2, 1))
        self.assertEqual(status, 'overdue')

    def test_falls_back_to_base_status(self):
        on_due_date = date(2025, 1, 31)
        self.assertEqual(derive_invoice_status(Decimal('100'), Decimal('0'), self.due, 'draft', today=on_due_date), 'draft')
        self.assertEqual(derive_invoice_status(Decimal('100'), Decimal('0'), self.due, 'sent', today=on_due_date), 'sent')

    def test_idempotent(self):
        """Deriving again from the same inputs gives the same status"""
        cases = [
            (Decimal('0'), Decimal('10')),
            (Decimal('10'), Decimal('5')),
            (Decimal('10'), Decimal('0')),
        ]
        for today in (date(2025, 1, 1), date(2025, 6, 1)):
            for balance, paid in cases:
                first = derive_invoice_status(balance, paid, self.due, 'sent', today=today)
                second = derive_invoice_status(balance, paid, self.due, 'sent', today=today)
                self.assertEqual(first, second)
