import random
from decimal import Decimal

from django.db import connection
from django.db.models import Sum
from django.test import TestCase, skipUnlessDBFeature
from django.test.utils import CaptureQueriesContext

from admissions.models import Registration
from audit.models import AuditLog
from users.models import Student
from finance.exceptions import ConflictError, NotFound, OverpaymentError, ValidationError
from finance.models import Payment, Receipt
from finance.services import InvoiceService, PaymentService, ReceiptService
from .base import LedgerFixtures


class RecordPaymentTest(LedgerFixtures, TestCase):

    def test_installments_then_automatic_receipt(self):
        """300 then 200 on a 500 fee issues one receipt for the full 500.00"""
        first = PaymentService.record_payment(self.student.pk, self.tuition.pk, '300', recorded_by=self.bursar)
        self.assertFalse(first.is_paid_in_full)
        self.assertIsNone(first.receipt)
        self.assertFalse(Receipt.objects.exists())

        second = PaymentService.record_payment(
            self.student.pk, self.tuition.pk, Decimal('200'), installment_number=2, recorded_by=self.bursar
        )
        self.assertTrue(second.is_paid_in_full)
        receipt = second.receipt
        self.assertIsNotNone(receipt)
        self.assertEqual(receipt.amount, Decimal('500.00'))
        self.assertEqual(receipt.payment, second.entry)
        self.assertEqual(receipt.student, self.student)
        self.assertEqual(receipt.receipt_type, 'tuition')
        self.assertEqual(receipt.receipt_number, f"R-{receipt.pk:06d}")
        self.assertEqual(receipt.document_type, 'Official Tuition Receipt')
        self.assertEqual(receipt.logo_url, '/static/sunrise.png')
        self.assertEqual(Receipt.objects.count(), 1)

    def test_overpayment_rejected_with_remaining_amount(self):
        """300 then 250 on a 500 fee is refused and cites 200.00"""
        PaymentService.record_payment(self.student.pk, self.tuition.pk, '300')

        with self.assertRaises(OverpaymentError) as ctx:
            PaymentService.record_payment(self.student.pk, self.tuition.pk, '250')

        self.assertIn('Maximum allowed payment is 200.00', str(ctx.exception))
        self.assertEqual(Payment.objects.filter(student=self.student).count(), 1)
        self.assertFalse(Receipt.objects.exists())

    def test_single_full_payment(self):
        result = PaymentService.record_payment(self.student.pk, self.tuition.pk, '500.00')
        self.assertTrue(result.is_paid_in_full)
        self.assertEqual(result.receipt.amount, Decimal('500.00'))

    def test_payment_after_full_payment_is_refused(self):
        PaymentService.record_payment(self.student.pk, self.tuition.pk, '500')
        with self.assertRaises(OverpaymentError) as ctx:
            PaymentService.record_payment(self.student.pk, self.tuition.pk, '0.01')
        self.assertIn('Maximum allowed payment is 0.00', str(ctx.exception))

    def test_amount_must_be_positive(self):
        for amount in ('0', '-5', 'abc'):
            with self.assertRaises(ValidationError):
                PaymentService.record_payment(self.student.pk, self.tuition.pk, amount)
        self.assertFalse(Payment.objects.exists())

    def test_installment_number_must_be_positive(self):
        with self.assertRaises(ValidationError):
            PaymentService.record_payment(self.student.pk, self.tuition.pk, '100', installment_number=0)

    def test_unknown_student_or_fee(self):
        with self.assertRaises(NotFound):
            PaymentService.record_payment(99999, self.tuition.pk, '100')
        with self.assertRaises(NotFound):
            PaymentService.record_payment(self.student.pk, 99999, '100')

    def test_defaults(self):
        payment = PaymentService.record_payment(self.student.pk, self.tuition.pk, '100').entry
        self.assertEqual(payment.payment_method, 'cash')
        self.assertEqual(payment.installment_number, 1)
        self.assertEqual(payment.payment_date, self.today)
        self.assertEqual(payment.school, self.school)

    def test_invalid_payment_method(self):
        with self.assertRaises(ValidationError):
            PaymentService.record_payment(self.student.pk, self.tuition.pk, '100', payment_method='bitcoin')

    def test_payment_is_audited(self):
        result = PaymentService.record_payment(self.student.pk, self.tuition.pk, '500', recorded_by=self.bursar)
        self.assertTrue(AuditLog.objects.filter(
            action='payment', model_name='Payment', object_id=str(result.entry.pk), user=self.bursar
        ).exists())
        self.assertTrue(AuditLog.objects.filter(action='receipt', object_id=str(result.receipt.pk)).exists())

    def test_random_sequences_never_exceed_fee(self):
        """Whatever order installments arrive in, the sum stays within the fee"""
        rng = random.Random(20250117)
        fee = self.make_fee(fee_type='exam', amount='1000.00', school_class=self.school_class)

        for trial in range(15):
            student = Student.objects.create(
                admission_number=f"RND{trial:03d}", first_name='Test', last_name=f"Student{trial}",
                school=self.school, school_class=self.school_class, category=self.category,
            )
            remaining = fee.amount
            for _ in range(12):
                amount = Decimal(rng.randint(1, 45000)) / 100
                if amount > remaining:
                    with self.assertRaises(OverpaymentError):
                        PaymentService.record_payment(student.pk, fee.pk, amount)
                else:
                    result = PaymentService.record_payment(student.pk, fee.pk, amount)
                    remaining -= amount
                    self.assertEqual(result.is_paid_in_full, remaining == 0)

                total = Payment.objects.filter(student=student, fee=fee).aggregate(t=Sum('amount_paid'))['t']
                self.assertLessEqual(total or 0, fee.amount)

            receipts = Receipt.objects.filter(student=student)
            self.assertEqual(receipts.count(), 1 if remaining == 0 else 0)


class UpdateDeletePaymentTest(LedgerFixtures, TestCase):

    def setUp(self):
        super().setUp()
        self.payment = PaymentService.record_payment(self.student.pk, self.tuition.pk, '300').entry

    def test_amount_change_rechecked_against_other_payments(self):
        PaymentService.record_payment(self.student.pk, self.tuition.pk, '100')
        with self.assertRaises(OverpaymentError) as ctx:
            PaymentService.update_payment(self.payment.pk, amount_paid='450')
        self.assertIn('Maximum allowed payment is 400.00', str(ctx.exception))

        payment, receipt = PaymentService.update_payment(self.payment.pk, amount_paid='350')
        self.assertEqual(payment.amount_paid, Decimal('350.00'))
        self.assertIsNone(receipt)

    def test_update_that_completes_fee_issues_receipt(self):
        payment, receipt = PaymentService.update_payment(self.payment.pk, amount_paid='500', user=self.bursar)
        self.assertIsNotNone(receipt)
        self.assertEqual(receipt.payment, payment)
        self.assertEqual(receipt.amount, Decimal('500.00'))

    def test_non_amount_fields(self):
        payment, _ = PaymentService.update_payment(
            self.payment.pk, remarks='Paid at front desk', payment_method='bank_transfer'
        )
        self.assertEqual(payment.remarks, 'Paid at front desk')
        self.assertEqual(payment.payment_method, 'bank_transfer')

    def test_receipted_payment_amount_is_locked(self):
        final = PaymentService.record_payment(self.student.pk, self.tuition.pk, '200').entry
        with self.assertRaises(ConflictError):
            PaymentService.update_payment(final.pk, amount_paid='150')

    def test_delete(self):
        PaymentService.delete_payment(self.payment.pk)
        self.assertFalse(Payment.objects.filter(pk=self.payment.pk).exists())

    def test_delete_receipted_payment_refused(self):
        final = PaymentService.record_payment(self.student.pk, self.tuition.pk, '200').entry
        with self.assertRaises(ConflictError):
            PaymentService.delete_payment(final.pk)

    def test_missing_payment(self):
        with self.assertRaises(NotFound):
            PaymentService.update_payment(99999, amount_paid='10')
        with self.assertRaises(NotFound):
            PaymentService.delete_payment(99999)


class IssueReceiptTest(LedgerFixtures, TestCase):

    def test_manual_receipt_for_payment(self):
        payment = PaymentService.record_payment(self.student.pk, self.tuition.pk, '300').entry
        receipt = ReceiptService.issue_receipt(
            'tuition', '300', student_id=self.student.pk, payment_id=payment.pk, issued_by=self.bursar
        )
        self.assertEqual(receipt.payment, payment)
        self.assertEqual(receipt.school_class, self.school_class)
        self.assertEqual(receipt.school, self.school)

    def test_second_receipt_for_payment_conflicts(self):
        payment = PaymentService.record_payment(self.student.pk, self.tuition.pk, '300').entry
        ReceiptService.issue_receipt('tuition', '300', student_id=self.student.pk, payment_id=payment.pk)

        with self.assertRaises(ConflictError):
            ReceiptService.issue_receipt('tuition', '300', student_id=self.student.pk, payment_id=payment.pk)
        self.assertEqual(Receipt.objects.filter(payment=payment).count(), 1)

    def test_completing_payment_receipted_after_manual_receipt(self):
        """A manual receipt on an earlier installment does not hold back the full-payment receipt"""
        first = PaymentService.record_payment(self.student.pk, self.tuition.pk, '300').entry
        manual = ReceiptService.issue_receipt(
            'tuition', '300', student_id=self.student.pk, payment_id=first.pk, issued_by=self.bursar
        )

        result = PaymentService.record_payment(self.student.pk, self.tuition.pk, '200', recorded_by=self.bursar)
        self.assertTrue(result.is_paid_in_full)
        self.assertIsNotNone(result.receipt)
        self.assertEqual(result.receipt.payment, result.entry)
        self.assertEqual(result.receipt.amount, Decimal('500.00'))
        self.assertEqual(Receipt.objects.get(payment=first), manual)
        self.assertEqual(Receipt.objects.filter(student=self.student).count(), 2)

    def test_auto_receipted_payment_cannot_get_another(self):
        result = PaymentService.record_payment(self.student.pk, self.tuition.pk, '500')
        with self.assertRaises(ConflictError):
            ReceiptService.issue_receipt('tuition', '500', student_id=self.student.pk, payment_id=result.entry.pk)

    def test_payment_of_another_student(self):
        payment = PaymentService.record_payment(self.student.pk, self.tuition.pk, '300').entry
        with self.assertRaises(ValidationError):
            ReceiptService.issue_receipt('tuition', '300', student_id=self.other_student.pk, payment_id=payment.pk)

    def test_exactly_one_holder(self):
        registration = Registration.objects.create(
            first_name='Ngozi', last_name='Eze', class_applied_for=self.school_class, school=self.school
        )
        with self.assertRaises(ValidationError):
            ReceiptService.issue_receipt('registration', '50')
        with self.assertRaises(ValidationError):
            ReceiptService.issue_receipt(
                'registration', '50', student_id=self.student.pk, registration_id=registration.pk
            )

        receipt = ReceiptService.issue_receipt(
            'exam', '50', registration_id=registration.pk, venue='Main Hall', exam_date=self.days_from_today(7)
        )
        self.assertIsNone(receipt.student)
        self.assertEqual(receipt.holder, registration)
        self.assertEqual(receipt.school_class, self.school_class)
        self.assertEqual(receipt.document_type, 'Official Exam Receipt')

    def test_invalid_type_and_amount(self):
        with self.assertRaises(ValidationError):
            ReceiptService.issue_receipt('lunch', '50', student_id=self.student.pk)
        with self.assertRaises(ValidationError):
            ReceiptService.issue_receipt('tuition', '0', student_id=self.student.pk)
        with self.assertRaises(ValidationError):
            ReceiptService.issue_receipt('tuition', None, student_id=self.student.pk)

    def test_unknown_payment(self):
        with self.assertRaises(NotFound):
            ReceiptService.issue_receipt('tuition', '50', student_id=self.student.pk, payment_id=99999)


@skipUnlessDBFeature('has_select_for_update')
class RowLockTest(LedgerFixtures, TestCase):
    """Only meaningful on backends that emit SELECT ... FOR UPDATE (PostgreSQL, MySQL)"""

    def locking_queries(self, context):
        return [query['sql'] for query in context.captured_queries if 'FOR UPDATE' in query['sql']]

    def test_fee_payment_locks_student_before_fee(self):
        with CaptureQueriesContext(connection) as context:
            PaymentService.record_payment(self.student.pk, self.tuition.pk, '100')

        locked = self.locking_queries(context)
        student_lock = next(i for i, sql in enumerate(locked) if 'users_student' in sql)
        fee_lock = next(i for i, sql in enumerate(locked) if 'finance_feedefinition' in sql)
        self.assertLess(student_lock, fee_lock)

    def test_invoice_payment_locks_invoice(self):
        invoice = InvoiceService.create_invoice(
            self.student.pk, self.today, self.days_from_today(30),
            [{'description': 'Tuition', 'amount': '100'}]
        )
        with CaptureQueriesContext(connection) as context:
            InvoiceService.mark_as_paid(invoice.pk, '40')

        locked = self.locking_queries(context)
        self.assertTrue(any('finance_invoice' in sql for sql in locked))
