"""
Posting money against a balance.

Fee installments and invoice payments go through the same steps: lock the
charge, check the remaining balance, record the entry, and issue a receipt
once the charge is settled. `FeeCharge` and `InvoiceCharge` supply the
model-specific parts.
"""
import logging
from collections import namedtuple
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.db.models import Sum

from users.models import Student
from .exceptions import ConflictError, OverpaymentError, PaymentExceedsBalanceError, ValidationError
from .models import FeeDefinition, Invoice, Payment, PaymentHistory, Receipt
from .utils import to_money

logger = logging.getLogger(__name__)

PostingResult = namedtuple('PostingResult', ['entry', 'receipt', 'is_paid_in_full'])

ZERO = Decimal('0.00')


def _logo_for(school):
    if school is not None and school.logo_url:
        return school.logo_url
    return settings.SCHOOL_LEDGER['DEFAULT_RECEIPT_LOGO']


class ChargeSource:
    """Something payments are posted against"""

    def lock(self):
        raise NotImplementedError

    def ensure_open(self):
        pass

    def total(self):
        raise NotImplementedError

    def paid_to_date(self, exclude=None):
        raise NotImplementedError

    def exceeds_error(self, amount, remaining):
        return OverpaymentError(
            f"Payment of {amount} would exceed the fee amount. "
            f"Maximum allowed payment is {remaining:.2f}"
        )

    def record(self, amount, **details):
        raise NotImplementedError

    def settle(self, entry, issued_by=None):
        """Issue the receipt for a fully paid charge. Returns None when nothing is issued."""
        return None


class FeeCharge(ChargeSource):
    """A student's obligation under one fee definition"""

    def __init__(self, student, fee):
        self.student = student
        self.fee = fee

    def lock(self):
        # student then fee, the same order everywhere
        self.student = Student.objects.select_for_update().get(pk=self.student.pk)
        self.fee = FeeDefinition.objects.select_for_update().get(pk=self.fee.pk)

    def total(self):
        return self.fee.amount

    def paid_to_date(self, exclude=None):
        payments = Payment.objects.filter(student=self.student, fee=self.fee)
        if exclude is not None:
            payments = payments.exclude(pk=exclude.pk)
        return payments.aggregate(total=Sum('amount_paid'))['total'] or ZERO

    def record(self, amount, payment_date=None, installment_number=1, payment_method='cash',
               transaction_reference='', remarks='', recorded_by=None, school=None):
        payment = Payment(
            student=self.student,
            fee=self.fee,
            amount_paid=amount,
            installment_number=installment_number or 1,
            payment_method=payment_method or 'cash',
            transaction_reference=transaction_reference or '',
            remarks=remarks or '',
            recorded_by=recorded_by,
            school=school or self.fee.school or self.student.school,
        )
        if payment_date:
            payment.payment_date = payment_date
        payment.save()
        return payment

    def settle(self, entry, issued_by=None):
        if Receipt.objects.filter(payment=entry).exists():
            return None

        school = entry.school or self.student.school
        receipt = Receipt.objects.create(
            student=self.student,
            payment=entry,
            receipt_type=self.fee.fee_type,
            amount=self.fee.amount,
            issued_by=issued_by,
            date_issued=entry.payment_date,
            logo_url=_logo_for(school),
            school_class=self.student.school_class,
            school=school,
        )
        logger.info(f"✅ Receipt {receipt.receipt_number} issued for payment #{entry.pk}")
        return receipt


class InvoiceCharge(ChargeSource):
    """The unpaid balance of an invoice"""

    def __init__(self, invoice):
        self.invoice = invoice

    def lock(self):
        self.invoice = Invoice.objects.select_for_update().get(pk=self.invoice.pk)

    def ensure_open(self):
        if self.invoice.status == 'cancelled':
            raise ConflictError("Cannot record payment on a cancelled invoice")

    def total(self):
        return self.invoice.total_amount

    def paid_to_date(self, exclude=None):
        return self.invoice.amount_paid

    def exceeds_error(self, amount, remaining):
        return PaymentExceedsBalanceError(
            f"Payment amount exceeds invoice balance. "
            f"Maximum allowed payment is {max(remaining, ZERO):.2f}"
        )

    def record(self, amount, date=None, method='cash', reference='', notes='', recorded_by=None):
        history = PaymentHistory(
            invoice=self.invoice,
            amount=amount,
            method=method or 'cash',
            reference=reference or '',
            notes=notes or '',
            recorded_by=recorded_by,
        )
        if date:
            history.date = date
        history.save()

        self.invoice.amount_paid = self.invoice.amount_paid + amount
        self.invoice.save(update_fields=['amount_paid'])
        return history

    def receipt_type(self):
        fee_types = set(
            self.invoice.items.filter(fee__isnull=False).values_list('fee__fee_type', flat=True)
        )
        has_free_lines = self.invoice.items.filter(fee__isnull=True).exists()
        if len(fee_types) == 1 and not has_free_lines:
            return fee_types.pop()
        return 'other'

    def settle(self, entry, issued_by=None):
        invoice = self.invoice
        school = invoice.school or invoice.student.school
        receipt = Receipt.objects.create(
            student=invoice.student,
            receipt_type=self.receipt_type(),
            amount=invoice.total_amount,
            issued_by=issued_by,
            date_issued=entry.date,
            logo_url=_logo_for(school),
            school_class=invoice.school_class or invoice.student.school_class,
            school=school,
        )
        entry.receipt = receipt
        entry.save(update_fields=['receipt'])
        logger.info(f"✅ Receipt {receipt.receipt_number} issued for invoice {invoice.invoice_number}")
        return receipt


class Ledger:

    @staticmethod
    def post(source, amount, issued_by=None, **details):
        """
        Post `amount` against `source` in one transaction.

        Raises ValidationError for a non-positive amount and the source's
        overpayment error when the amount is more than what is left.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        with transaction.atomic():
            source.lock()
            source.ensure_open()

            total = source.total()
            paid = source.paid_to_date()
            remaining = total - paid
            if amount > remaining:
                raise source.exceeds_error(amount, remaining)

            entry = source.record(amount, **details)

            is_paid_in_full = paid + amount >= total
            receipt = source.settle(entry, issued_by=issued_by) if is_paid_in_full else None

        return PostingResult(entry, receipt, is_paid_in_full)

    @staticmethod
    def check_adjustment(source, entry, new_amount):
        """
        Validate a changed amount for an existing fee payment against the other
        payments on the same charge. Caller must hold the transaction.
        """
        new_amount = to_money(new_amount, field='amount_paid')
        if new_amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        source.lock()
        others = source.paid_to_date(exclude=entry)
        remaining = source.total() - others
        if new_amount > remaining:
            raise source.exceeds_error(new_amount, remaining)
        return new_amount, others + new_amount >= source.total()
