from decimal import Decimal
from io import StringIO

from django.core import mail
from django.core.management import call_command
from django.test import TestCase

from finance.exceptions import ConflictError, NotFound, PaymentExceedsBalanceError, ValidationError
from finance.models import Invoice, InvoiceSequence, PaymentHistory, Receipt
from finance.services import InvoiceService
from .base import LedgerFixtures


class InvoiceTestMixin(LedgerFixtures):

    def create_invoice(self, items=None, issue_in=0, due_in=30, **kwargs):
        if items is None:
            items = [{'description': 'Tuition', 'amount': '1000.00', 'quantity': 1}]
        return InvoiceService.create_invoice(
            self.student.pk,
            self.days_from_today(issue_in),
            self.days_from_today(due_in),
            items,
            created_by=self.bursar,
            **kwargs
        )

    def assertBalanced(self, invoice):
        invoice.refresh_from_db()
        self.assertEqual(invoice.balance, invoice.total_amount - invoice.amount_paid)


class CreateInvoiceTest(InvoiceTestMixin, TestCase):

    def test_create_with_items(self):
        invoice = self.create_invoice(items=[
            {'description': 'Tuition', 'amount': '400', 'quantity': 2},
            {'description': 'Books', 'amount': '150.50'},
        ], notes='Second term')

        self.assertEqual(invoice.total_amount, Decimal('950.50'))
        self.assertEqual(invoice.balance, Decimal('950.50'))
        self.assertEqual(invoice.status, 'draft')
        self.assertEqual(invoice.items.count(), 2)
        self.assertEqual(invoice.items.first().total, Decimal('800.00'))
        self.assertEqual(invoice.school, self.school)
        self.assertEqual(invoice.school_class, self.school_class)

    def test_invoice_numbers_are_sequential_per_year(self):
        first = self.create_invoice()
        second = self.create_invoice()
        year = self.today.year
        self.assertEqual(first.invoice_number, f"INV-{year}-0001")
        self.assertEqual(second.invoice_number, f"INV-{year}-0002")
        self.assertEqual(InvoiceSequence.objects.get(year=year).last_number, 2)

    def test_item_from_fee_definition(self):
        invoice = self.create_invoice(items=[{'fee_id': self.tuition.pk, 'quantity': 2}])
        item = invoice.items.get()
        self.assertEqual(item.fee, self.tuition)
        self.assertEqual(item.amount, Decimal('500.00'))
        self.assertEqual(item.description, 'First term tuition')
        self.assertEqual(invoice.total_amount, Decimal('1000.00'))

    def test_past_due_draft_is_overdue(self):
        """An unpaid invoice whose due date has passed is overdue"""
        invoice = self.create_invoice(issue_in=-30, due_in=-1)
        self.assertEqual(invoice.status, 'overdue')

    def test_validation(self):
        with self.assertRaises(ValidationError):
            self.create_invoice(items=[])
        with self.assertRaises(ValidationError):
            self.create_invoice(issue_in=5, due_in=1)
        with self.assertRaises(ValidationError):
            self.create_invoice(items=[{'description': 'Bad', 'amount': '-1'}])
        with self.assertRaises(ValidationError):
            self.create_invoice(items=[{'description': 'Bad', 'amount': '10', 'quantity': 0}])
        with self.assertRaises(ValidationError):
            self.create_invoice(items=[{'amount': '10'}])
        with self.assertRaises(ValidationError):
            InvoiceService.create_invoice(self.student.pk, None, self.today, [{'description': 'x', 'amount': 1}])
        self.assertFalse(Invoice.objects.exists())

    def test_unknown_student(self):
        with self.assertRaises(NotFound):
            InvoiceService.create_invoice(99999, self.today, self.today, [{'description': 'x', 'amount': 1}])


class InvoicePaymentTest(InvoiceTestMixin, TestCase):

    def test_partial_then_full_payment(self):
        """600 then 400 on 1000: partially paid, then paid with a receipt, then undeletable"""
        invoice = self.create_invoice()

        invoice, result = InvoiceService.mark_as_paid(invoice.pk, '600', method='bank_transfer', user=self.bursar)
        self.assertEqual(invoice.status, 'partially_paid')
        self.assertEqual(invoice.amount_paid, Decimal('600.00'))
        self.assertIsNone(result.receipt)
        self.assertBalanced(invoice)

        invoice, result = InvoiceService.mark_as_paid(invoice.pk, '400', reference='TRX-9', user=self.bursar)
        self.assertEqual(invoice.status, 'paid')
        self.assertEqual(invoice.balance, Decimal('0.00'))
        self.assertTrue(result.is_paid_in_full)
        self.assertBalanced(invoice)

        receipt = result.receipt
        self.assertEqual(receipt.amount, Decimal('1000.00'))
        self.assertEqual(receipt.student, self.student)
        self.assertEqual(receipt.receipt_type, 'other')
        history = PaymentHistory.objects.filter(invoice=invoice)
        self.assertEqual(history.count(), 2)
        self.assertEqual(history.get(receipt__isnull=False).reference, 'TRX-9')

        with self.assertRaises(ConflictError):
            InvoiceService.delete_invoice(invoice.pk)
        with self.assertRaises(ConflictError):
            InvoiceService.cancel_invoice(invoice.pk)

    def test_receipt_type_follows_fee_lines(self):
        invoice = self.create_invoice(items=[{'fee_id': self.tuition.pk}])
        _, result = InvoiceService.mark_as_paid(invoice.pk, '500')
        self.assertEqual(result.receipt.receipt_type, 'tuition')

    def test_payment_exceeding_balance(self):
        invoice = self.create_invoice()
        InvoiceService.mark_as_paid(invoice.pk, '700')

        with self.assertRaises(PaymentExceedsBalanceError) as ctx:
            InvoiceService.mark_as_paid(invoice.pk, '300.01')
        self.assertIn('Maximum allowed payment is 300.00', str(ctx.exception))

        invoice.refresh_from_db()
        self.assertEqual(invoice.amount_paid, Decimal('700.00'))
        self.assertEqual(PaymentHistory.objects.filter(invoice=invoice).count(), 1)

    def test_amount_must_be_positive(self):
        invoice = self.create_invoice()
        with self.assertRaises(ValidationError):
            InvoiceService.mark_as_paid(invoice.pk, '0')

    def test_unknown_invoice(self):
        with self.assertRaises(NotFound):
            InvoiceService.mark_as_paid(99999, '10')

    def test_overdue_invoice_accepts_payment(self):
        invoice = self.create_invoice(issue_in=-30, due_in=-1)
        invoice, _ = InvoiceService.mark_as_paid(invoice.pk, '100')
        self.assertEqual(invoice.status, 'partially_paid')


class InvoiceLifecycleTest(InvoiceTestMixin, TestCase):

    def test_cancel_is_sticky(self):
        invoice = self.create_invoice(notes='Term 2')
        invoice = InvoiceService.cancel_invoice(invoice.pk, reason='Student withdrew', user=self.bursar)
        self.assertEqual(invoice.status, 'cancelled')
        self.assertEqual(invoice.notes, 'Term 2\nCancellation reason: Student withdrew')

        with self.assertRaises(ConflictError):
            InvoiceService.mark_as_paid(invoice.pk, '100')

        invoice = InvoiceService.update_invoice(invoice.pk, notes='Archived')
        self.assertEqual(invoice.status, 'cancelled')

        InvoiceService.refresh_statuses(today=self.days_from_today(60))
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, 'cancelled')

        with self.assertRaises(ConflictError):
            InvoiceService.mark_as_sent(invoice.pk)
        with self.assertRaises(ConflictError):
            InvoiceService.update_invoice(invoice.pk, items=[{'description': 'x', 'amount': '1'}])

    def test_cancel_twice_is_harmless(self):
        invoice = self.create_invoice()
        InvoiceService.cancel_invoice(invoice.pk, reason='Duplicate')
        invoice = InvoiceService.cancel_invoice(invoice.pk, reason='Again')
        self.assertEqual(invoice.notes.count('Cancellation reason'), 1)

    def test_mark_as_sent(self):
        invoice = InvoiceService.mark_as_sent(self.create_invoice().pk)
        self.assertEqual(invoice.status, 'sent')
        self.assertEqual(invoice.base_status, 'sent')

    def test_update_items_recomputes_total(self):
        invoice = self.create_invoice()
        InvoiceService.mark_as_paid(invoice.pk, '200')

        invoice = InvoiceService.update_invoice(invoice.pk, items=[
            {'description': 'Tuition', 'amount': '300'},
            {'description': 'Uniform', 'amount': '50', 'quantity': 2},
        ])
        self.assertEqual(invoice.total_amount, Decimal('400.00'))
        self.assertEqual(invoice.items.count(), 2)
        self.assertEqual(invoice.status, 'partially_paid')
        self.assertBalanced(invoice)

    def test_total_cannot_drop_below_paid(self):
        invoice = self.create_invoice()
        InvoiceService.mark_as_paid(invoice.pk, '600')
        with self.assertRaises(ValidationError):
            InvoiceService.update_invoice(invoice.pk, items=[{'description': 'Tuition', 'amount': '500'}])

    def test_items_lowered_to_amount_paid_issue_receipt(self):
        """1000 invoice, 600 paid, items cut to 600: paid, and the last payment gets the receipt"""
        invoice = self.create_invoice()
        InvoiceService.mark_as_paid(invoice.pk, '600', reference='TRX-1', user=self.bursar)

        invoice = InvoiceService.update_invoice(
            invoice.pk, items=[{'description': 'Tuition', 'amount': '600'}], user=self.bursar
        )
        self.assertEqual(invoice.status, 'paid')
        self.assertEqual(invoice.balance, Decimal('0.00'))
        self.assertBalanced(invoice)

        receipt = Receipt.objects.get(student=self.student)
        self.assertEqual(receipt.amount, Decimal('600.00'))
        self.assertEqual(receipt.issued_by, self.bursar)
        history = PaymentHistory.objects.get(invoice=invoice)
        self.assertEqual(history.receipt, receipt)

        with self.assertRaises(ConflictError):
            InvoiceService.delete_invoice(invoice.pk)

    def test_items_raised_on_paid_invoice(self):
        """Raising a paid invoice reopens it; the old receipt stays and the new total gets its own"""
        invoice = self.create_invoice()
        _, result = InvoiceService.mark_as_paid(invoice.pk, '1000')
        first_receipt = result.receipt

        invoice = InvoiceService.update_invoice(invoice.pk, items=[
            {'description': 'Tuition', 'amount': '1000'},
            {'description': 'Books', 'amount': '200'},
        ])
        self.assertEqual(invoice.status, 'partially_paid')
        self.assertEqual(invoice.balance, Decimal('200.00'))
        self.assertEqual(list(Receipt.objects.filter(student=self.student)), [first_receipt])

        # back to the receipted total: no second receipt for the same payment
        invoice = InvoiceService.update_invoice(invoice.pk, items=[{'description': 'Tuition', 'amount': '1000'}])
        self.assertEqual(invoice.status, 'paid')
        self.assertEqual(Receipt.objects.filter(student=self.student).count(), 1)

        InvoiceService.update_invoice(invoice.pk, items=[
            {'description': 'Tuition', 'amount': '1000'},
            {'description': 'Books', 'amount': '200'},
        ])
        invoice, result = InvoiceService.mark_as_paid(invoice.pk, '200')
        self.assertEqual(invoice.status, 'paid')
        self.assertEqual(result.receipt.amount, Decimal('1200.00'))
        self.assertEqual(Receipt.objects.filter(student=self.student).count(), 2)
        self.assertEqual(PaymentHistory.objects.filter(invoice=invoice, receipt__isnull=False).count(), 2)

    def test_only_draft_or_sent_can_be_set(self):
        invoice = self.create_invoice()
        with self.assertRaises(ValidationError):
            InvoiceService.update_invoice(invoice.pk, status='paid')
        invoice = InvoiceService.update_invoice(invoice.pk, status='sent')
        self.assertEqual(invoice.status, 'sent')

    def test_update_dates_checked(self):
        invoice = self.create_invoice()
        with self.assertRaises(ValidationError):
            InvoiceService.update_invoice(invoice.pk, due_date=self.days_from_today(-5))

    def test_delete_unpaid(self):
        invoice = self.create_invoice()
        InvoiceService.delete_invoice(invoice.pk)
        self.assertFalse(Invoice.objects.filter(pk=invoice.pk).exists())

    def test_balance_invariant_across_mutations(self):
        invoice = self.create_invoice()
        self.assertBalanced(invoice)
        InvoiceService.mark_as_paid(invoice.pk, '250')
        self.assertBalanced(invoice)
        InvoiceService.update_invoice(invoice.pk, items=[{'description': 'Tuition', 'amount': '800'}])
        self.assertBalanced(invoice)
        InvoiceService.mark_as_paid(invoice.pk, '550')
        self.assertBalanced(invoice)

    def test_summary(self):
        paid = self.create_invoice()
        InvoiceService.mark_as_paid(paid.pk, '1000')
        partial = self.create_invoice()
        InvoiceService.mark_as_paid(partial.pk, '250')
        self.create_invoice()
        cancelled = self.create_invoice()
        InvoiceService.cancel_invoice(cancelled.pk)

        summary = InvoiceService.get_invoices_summary()
        self.assertEqual(summary['total'], 4)
        self.assertEqual(summary['paid'], 1)
        self.assertEqual(summary['partially_paid'], 1)
        self.assertEqual(summary['draft'], 1)
        self.assertEqual(summary['cancelled'], 1)
        self.assertEqual(summary['overdue'], 0)
        self.assertEqual(summary['total_amount'], Decimal('4000.00'))
        self.assertEqual(summary['total_paid'], Decimal('1250.00'))
        self.assertEqual(summary['total_balance'], Decimal('2750.00'))

    def test_empty_summary(self):
        summary = InvoiceService.get_invoices_summary(school_id=self.school.pk)
        self.assertEqual(summary['total'], 0)
        self.assertEqual(summary['total_amount'], Decimal('0'))
        self.assertEqual(summary['total_balance'], Decimal('0'))


class OverdueSweepTest(InvoiceTestMixin, TestCase):

    def test_refresh_statuses(self):
        unpaid = self.create_invoice(due_in=10)
        partial = self.create_invoice(due_in=10)
        InvoiceService.mark_as_paid(partial.pk, '100')

        changed = InvoiceService.refresh_statuses(today=self.days_from_today(11))

        self.assertEqual(changed, 1)
        unpaid.refresh_from_db()
        partial.refresh_from_db()
        self.assertEqual(unpaid.status, 'overdue')
        self.assertEqual(partial.status, 'partially_paid')

    def test_refresh_is_idempotent(self):
        self.create_invoice(due_in=10)
        later = self.days_from_today(11)
        self.assertEqual(InvoiceService.refresh_statuses(today=later), 1)
        self.assertEqual(InvoiceService.refresh_statuses(today=later), 0)

    def test_management_command(self):
        invoice = self.create_invoice(due_in=3)
        out = StringIO()
        call_command('refresh_invoice_statuses', date=str(self.days_from_today(4)), stdout=out)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, 'overdue')
        self.assertIn('1 invoice(s) updated', out.getvalue())


class SendInvoiceEmailTest(InvoiceTestMixin, TestCase):

    def test_send(self):
        invoice = self.create_invoice()
        invoice = InvoiceService.send_invoice_email(
            invoice.pk, 'parent@example.com', cc=['bursar@school.test'], message='Please pay before the due date'
        )
        self.assertEqual(invoice.status, 'sent')
        self.assertEqual(len(mail.outbox), 1)
        sent = mail.outbox[0]
        self.assertEqual(sent.to, ['parent@example.com'])
        self.assertEqual(sent.cc, ['bursar@school.test'])
        self.assertIn(invoice.invoice_number, sent.subject)
        self.assertIn('Please pay before the due date', sent.body)
        self.assertIn('Balance: 1,000.00', sent.body)

    def test_cancelled_invoice_not_sent(self):
        invoice = self.create_invoice()
        InvoiceService.cancel_invoice(invoice.pk)
        with self.assertRaises(ConflictError):
            InvoiceService.send_invoice_email(invoice.pk, 'parent@example.com')
        self.assertEqual(len(mail.outbox), 0)
        self.assertFalse(Receipt.objects.exists())
