import logging
from decimal import Decimal

from django.conf import settings
from django.core.mail import EmailMessage
from django.db import IntegrityError, transaction
from django.db.models import Case, Count, DecimalField, IntegerField, Q, Sum, Value, When
from django.db.models.functions import Coalesce
from django.utils import timezone

from academics.models import AcademicYear, Category, School, SchoolClass
from admissions.models import Registration
from audit.services import log_action
from users.models import Student
from .exceptions import ConflictError, DuplicateFeeError, NotFound, ValidationError
from .ledger import FeeCharge, InvoiceCharge, Ledger
from .models import (
    FEE_TYPE_CHOICES, PAYMENT_METHOD_CHOICES,
    FeeDefinition, Invoice, InvoiceItem, InvoiceSequence, Payment, PaymentHistory, Receipt
)
from .utils import derive_invoice_status, to_money

logger = logging.getLogger(__name__)

FEE_TYPES = [choice[0] for choice in FEE_TYPE_CHOICES]
PAYMENT_METHODS = [choice[0] for choice in PAYMENT_METHOD_CHOICES]
ZERO = Decimal('0.00')
MONEY = DecimalField(max_digits=14, decimal_places=2)


def _get_or_404(model, pk, label):
    if pk in (None, ''):
        raise ValidationError(f"{label} is required")
    try:
        return model.objects.get(pk=pk)
    except (model.DoesNotExist, ValueError, TypeError):
        raise NotFound(f"{label} not found")


def _optional(model, pk, label):
    if pk in (None, ''):
        return None
    return _get_or_404(model, pk, label)


def _check_method(method):
    if method and method not in PAYMENT_METHODS:
        raise ValidationError(f"Invalid payment method. Allowed: {', '.join(PAYMENT_METHODS)}")


def applicable_fees(student):
    """Fees for the student's category: their own class or every class"""
    category_id = student.category_id
    if category_id is None and student.school_class_id:
        category_id = student.school_class.category_id
    if category_id is None:
        return FeeDefinition.objects.none()

    class_scope = Q(school_class__isnull=True)
    if student.school_class_id:
        class_scope |= Q(school_class_id=student.school_class_id)

    return (
        FeeDefinition.objects
        .filter(category_id=category_id)
        .filter(class_scope)
        .select_related('category', 'school_class', 'academic_year')
        .order_by('fee_type', 'id')
    )


class FeeCatalogService:

    @staticmethod
    def scope_exists(category_id, school_class_id, fee_type, academic_year_id, exclude_id=None):
        """Duplicate check with NULL class / year compared as equal"""
        fees = FeeDefinition.objects.filter(category_id=category_id, fee_type=fee_type)
        if school_class_id is None:
            fees = fees.filter(school_class__isnull=True)
        else:
            fees = fees.filter(school_class_id=school_class_id)
        if academic_year_id is None:
            fees = fees.filter(academic_year__isnull=True)
        else:
            fees = fees.filter(academic_year_id=academic_year_id)
        if exclude_id is not None:
            fees = fees.exclude(pk=exclude_id)
        return fees.exists()

    @staticmethod
    def _validate_fee_type(fee_type):
        if fee_type not in FEE_TYPES:
            raise ValidationError(f"Invalid fee type. Allowed: {', '.join(FEE_TYPES)}")

    @staticmethod
    def _validate_amount(amount):
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Fee amount must be greater than zero")
        return amount

    @staticmethod
    def create_fee_definition(category_id, fee_type, amount, school_class_id=None, academic_year_id=None,
                              description='', school_id=None, effective_date=None, user=None, request=None):
        FeeCatalogService._validate_fee_type(fee_type)
        amount = FeeCatalogService._validate_amount(amount)

        category = _get_or_404(Category, category_id, 'Category')
        school_class = _optional(SchoolClass, school_class_id, 'Class')
        academic_year = _optional(AcademicYear, academic_year_id, 'Academic year')
        school = _optional(School, school_id, 'School') or category.school

        try:
            with transaction.atomic():
                # concurrent creates for one category queue here
                Category.objects.select_for_update().get(pk=category.pk)
                if FeeCatalogService.scope_exists(
                    category.pk, school_class.pk if school_class else None, fee_type,
                    academic_year.pk if academic_year else None
                ):
                    raise DuplicateFeeError(
                        "A fee already exists for this category, class, fee type and academic year"
                    )

                fee = FeeDefinition.objects.create(
                    category=category,
                    school_class=school_class,
                    fee_type=fee_type,
                    amount=amount,
                    description=description or '',
                    academic_year=academic_year,
                    school=school,
                    effective_date=effective_date,
                )
                log_action(user, 'create', fee, f"Created {fee_type} fee of {amount}",
                           changes={'amount': amount}, request=request)
        except IntegrityError:
            raise DuplicateFeeError(
                "A fee already exists for this category, class, fee type and academic year"
            )

        logger.info(f"✅ Fee #{fee.pk} created ({fee_type}, {amount})")
        return fee

    @staticmethod
    def get_fee_for_scope(category_id, class_id=None, academic_year_id=None, fee_type=None):
        """
        Most specific fee for a scope. An exact class beats the class wildcard,
        an exact year beats the year wildcard, class specificity outranks year
        specificity, and the newest definition wins a remaining tie.
        """
        if category_id in (None, ''):
            raise ValidationError("category_id is required")

        class_scope = Q(school_class__isnull=True)
        if class_id not in (None, ''):
            class_scope |= Q(school_class_id=class_id)

        year_scope = Q(academic_year__isnull=True)
        if academic_year_id not in (None, ''):
            year_scope |= Q(academic_year_id=academic_year_id)

        fees = FeeDefinition.objects.filter(category_id=category_id).filter(class_scope).filter(year_scope)
        if fee_type:
            fees = fees.filter(fee_type=fee_type)

        fee = (
            fees.annotate(
                class_rank=Case(When(school_class__isnull=False, then=Value(1)), default=Value(0),
                                output_field=IntegerField()),
                year_rank=Case(When(academic_year__isnull=False, then=Value(1)), default=Value(0),
                               output_field=IntegerField()),
            )
            .order_by('-class_rank', '-year_rank', '-id')
            .first()
        )

        if fee is None:
            raise NotFound("No fee defined for this scope")
        return fee

    @staticmethod
    def update_fee_definition(fee_id, user=None, request=None, **changes):
        with transaction.atomic():
            try:
                fee = FeeDefinition.objects.select_for_update().get(pk=fee_id)
            except (FeeDefinition.DoesNotExist, ValueError):
                raise NotFound("Fee not found")

            before = {'amount': fee.amount, 'fee_type': fee.fee_type}

            if 'amount' in changes:
                amount = FeeCatalogService._validate_amount(changes['amount'])
                if amount != fee.amount and fee.payments.exists():
                    raise ConflictError("Fee amount cannot be changed once payments have been recorded")
                fee.amount = amount

            if 'fee_type' in changes:
                FeeCatalogService._validate_fee_type(changes['fee_type'])
                fee.fee_type = changes['fee_type']

            if 'category_id' in changes:
                fee.category = _get_or_404(Category, changes['category_id'], 'Category')
            if 'school_class_id' in changes:
                fee.school_class = _optional(SchoolClass, changes['school_class_id'], 'Class')
            if 'academic_year_id' in changes:
                fee.academic_year = _optional(AcademicYear, changes['academic_year_id'], 'Academic year')
            if 'school_id' in changes:
                fee.school = _optional(School, changes['school_id'], 'School')
            if 'description' in changes:
                fee.description = changes['description'] or ''
            if 'effective_date' in changes:
                fee.effective_date = changes['effective_date']

            Category.objects.select_for_update().get(pk=fee.category_id)
            if FeeCatalogService.scope_exists(
                fee.category_id, fee.school_class_id, fee.fee_type, fee.academic_year_id, exclude_id=fee.pk
            ):
                raise DuplicateFeeError(
                    "A fee already exists for this category, class, fee type and academic year"
                )

            fee.save()
            log_action(user, 'update', fee, f"Updated fee #{fee.pk}",
                       changes={'before': before, 'after': {'amount': fee.amount, 'fee_type': fee.fee_type}},
                       request=request)
        return fee

    @staticmethod
    def delete_fee_definition(fee_id, user=None, request=None):
        with transaction.atomic():
            try:
                fee = FeeDefinition.objects.select_for_update().get(pk=fee_id)
            except (FeeDefinition.DoesNotExist, ValueError):
                raise NotFound("Fee not found")

            if fee.payments.exists() or fee.invoice_items.exists():
                raise ConflictError("Cannot delete fee: it is in use by payments or invoices")

            log_action(user, 'delete', fee, f"Deleted {fee.fee_type} fee #{fee.pk}",
                       changes={'amount': fee.amount}, request=request)
            fee.delete()
        logger.info(f"🗑️ Fee #{fee_id} deleted")

    @staticmethod
    def list_fees(school_id=None, fee_type=None, category_id=None, class_id=None):
        fees = FeeDefinition.objects.select_related('category', 'school_class', 'academic_year', 'school')
        if school_id:
            fees = fees.filter(school_id=school_id)
        if fee_type:
            fees = fees.filter(fee_type=fee_type)
        if category_id:
            fees = fees.filter(category_id=category_id)
        if class_id:
            fees = fees.filter(Q(school_class_id=class_id) | Q(school_class__isnull=True))
        return fees.order_by('category__name', 'fee_type', 'id')

    @staticmethod
    def _paid_by_fee(student):
        return dict(
            Payment.objects.filter(student=student)
            .values('fee')
            .annotate(total=Sum('amount_paid'))
            .values_list('fee', 'total')
        )

    @staticmethod
    def outstanding_fees(student_id):
        """Applicable fees the student still owes on, with amount paid and outstanding"""
        student = _get_or_404(Student, student_id, 'Student')
        paid = FeeCatalogService._paid_by_fee(student)

        outstanding = []
        for fee in applicable_fees(student):
            amount_paid = paid.get(fee.pk) or ZERO
            remaining = fee.amount - amount_paid
            if remaining > 0:
                outstanding.append({
                    'fee': fee,
                    'amount_paid': amount_paid,
                    'outstanding_amount': remaining,
                })
        return outstanding

    @staticmethod
    def student_payment_summary(student_id):
        student = _get_or_404(Student, student_id, 'Student')
        payments = list(
            Payment.objects.filter(student=student)
            .select_related('fee', 'recorded_by', 'school', 'receipt')
            .order_by('-payment_date', '-id')
        )
        paid = FeeCatalogService._paid_by_fee(student)

        fee_summary = []
        for fee in applicable_fees(student):
            amount_paid = paid.get(fee.pk) or ZERO
            remaining = fee.amount - amount_paid
            fee_summary.append({
                'fee_id': fee.pk,
                'fee_type': fee.fee_type,
                'description': fee.description,
                'total_amount': fee.amount,
                'amount_paid': amount_paid,
                'remaining_amount': remaining,
                'is_paid': remaining <= 0,
            })

        total_remaining = sum((row['remaining_amount'] for row in fee_summary), ZERO)
        return {
            'student_id': student.pk,
            'payments': payments,
            'fee_summary': fee_summary,
            'total_paid': sum((p.amount_paid for p in payments), ZERO),
            'total_fees': sum((row['total_amount'] for row in fee_summary), ZERO),
            'total_remaining': total_remaining,
            'payment_count': len(payments),
            'is_fully_paid': total_remaining <= 0,
        }


class PaymentService:

    @staticmethod
    def record_payment(student_id, fee_id, amount_paid, payment_date=None, installment_number=None,
                       payment_method=None, transaction_reference='', remarks='', recorded_by=None,
                       school_id=None, request=None):
        """
        Record an installment against a fee. Issues the receipt in the same
        transaction when the fee becomes fully paid.
        """
        if installment_number is not None and int(installment_number) < 1:
            raise ValidationError("Installment number must be a positive integer")
        _check_method(payment_method)

        student = _get_or_404(Student, student_id, 'Student')
        fee = _get_or_404(FeeDefinition, fee_id, 'Fee')
        school = _optional(School, school_id, 'School')

        with transaction.atomic():
            result = Ledger.post(
                FeeCharge(student, fee),
                amount_paid,
                issued_by=recorded_by,
                payment_date=payment_date,
                installment_number=installment_number,
                payment_method=payment_method,
                transaction_reference=transaction_reference,
                remarks=remarks,
                recorded_by=recorded_by,
                school=school,
            )
            payment = result.entry
            log_action(recorded_by, 'payment', payment,
                       f"Recorded payment of {payment.amount_paid} for {student.admission_number} ({fee.fee_type})",
                       changes={'amount_paid': payment.amount_paid, 'fee_id': fee.pk}, request=request)
            if result.receipt:
                log_action(recorded_by, 'receipt', result.receipt,
                           f"Receipt {result.receipt.receipt_number} issued on full payment",
                           changes={'amount': result.receipt.amount, 'payment_id': payment.pk}, request=request)

        logger.info(
            f"✅ Payment #{payment.pk} recorded: {payment.amount_paid} by {student.admission_number}"
            f"{' (paid in full)' if result.is_paid_in_full else ''}"
        )
        return result

    @staticmethod
    def update_payment(payment_id, user=None, request=None, **changes):
        """Returns (payment, receipt issued by this change or None)"""
        receipt = None
        with transaction.atomic():
            try:
                payment = Payment.objects.select_for_update().get(pk=payment_id)
            except (Payment.DoesNotExist, ValueError):
                raise NotFound("Payment not found")

            before = {'amount_paid': payment.amount_paid}
            is_paid_in_full = False

            if 'amount_paid' in changes:
                new_amount = to_money(changes['amount_paid'], field='amount_paid')
                if new_amount != payment.amount_paid:
                    if Receipt.objects.filter(payment=payment).exists():
                        raise ConflictError("Cannot change the amount of a payment that has a receipt")
                    source = FeeCharge(payment.student, payment.fee)
                    new_amount, is_paid_in_full = Ledger.check_adjustment(source, payment, new_amount)
                    payment.amount_paid = new_amount

            if 'installment_number' in changes:
                if changes['installment_number'] is None or int(changes['installment_number']) < 1:
                    raise ValidationError("Installment number must be a positive integer")
                payment.installment_number = changes['installment_number']
            if 'payment_method' in changes:
                _check_method(changes['payment_method'])
                payment.payment_method = changes['payment_method'] or 'cash'
            for field in ('payment_date', 'transaction_reference', 'remarks'):
                if field in changes and changes[field] is not None:
                    setattr(payment, field, changes[field])

            payment.save()

            if is_paid_in_full:
                receipt = FeeCharge(payment.student, payment.fee).settle(payment, issued_by=user)

            log_action(user, 'update', payment, f"Updated payment #{payment.pk}",
                       changes={'before': before, 'after': {'amount_paid': payment.amount_paid}}, request=request)
        return payment, receipt

    @staticmethod
    def delete_payment(payment_id, user=None, request=None):
        with transaction.atomic():
            try:
                payment = Payment.objects.select_for_update().get(pk=payment_id)
            except (Payment.DoesNotExist, ValueError):
                raise NotFound("Payment not found")

            if Receipt.objects.filter(payment=payment).exists():
                raise ConflictError("Cannot delete a payment that has a receipt")

            log_action(user, 'delete', payment, f"Deleted payment #{payment.pk}",
                       changes={'amount_paid': payment.amount_paid, 'student_id': payment.student_id,
                                'fee_id': payment.fee_id}, request=request)
            payment.delete()
        logger.info(f"🗑️ Payment #{payment_id} deleted")


class ReceiptService:

    @staticmethod
    def issue_receipt(receipt_type, amount, student_id=None, registration_id=None, payment_id=None,
                      date_issued=None, venue='', exam_date=None, logo_url=None, school_id=None,
                      class_id=None, issued_by=None, request=None):
        has_student = student_id not in (None, '')
        has_registration = registration_id not in (None, '')
        if has_student == has_registration:
            raise ValidationError("Provide exactly one of student_id or registration_id")
        if receipt_type not in FEE_TYPES:
            raise ValidationError(f"Invalid receipt type. Allowed: {', '.join(FEE_TYPES)}")
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Receipt amount must be greater than zero")

        student = _get_or_404(Student, student_id, 'Student') if has_student else None
        registration = _get_or_404(Registration, registration_id, 'Registration') if has_registration else None
        school = _optional(School, school_id, 'School')
        school_class = _optional(SchoolClass, class_id, 'Class')
        holder = student or registration

        with transaction.atomic():
            payment = None
            if payment_id not in (None, ''):
                try:
                    payment = Payment.objects.select_for_update().get(pk=payment_id)
                except (Payment.DoesNotExist, ValueError):
                    raise NotFound("Payment not found")
                if Receipt.objects.filter(payment=payment).exists():
                    raise ConflictError("A receipt has already been issued for this payment")
                if student is None or payment.student_id != student.pk:
                    raise ValidationError("Payment does not belong to this student")

            if school is None:
                school = getattr(holder, 'school', None)
            if school_class is None:
                school_class = student.school_class if student else registration.class_applied_for
            if not logo_url:
                logo_url = school.logo_url if school and school.logo_url else settings.SCHOOL_LEDGER['DEFAULT_RECEIPT_LOGO']

            receipt = Receipt(
                student=student,
                registration=registration,
                payment=payment,
                receipt_type=receipt_type,
                amount=amount,
                issued_by=issued_by,
                venue=venue or '',
                exam_date=exam_date,
                logo_url=logo_url,
                school_class=school_class,
                school=school,
            )
            if date_issued:
                receipt.date_issued = date_issued

            try:
                with transaction.atomic():
                    receipt.save()
            except IntegrityError:
                raise ConflictError("A receipt has already been issued for this payment")

            log_action(issued_by, 'receipt', receipt, f"Issued receipt {receipt.receipt_number}",
                       changes={'amount': amount, 'payment_id': payment.pk if payment else None}, request=request)

        logger.info(f"✅ Receipt {receipt.receipt_number} issued for {holder}")
        return receipt


class InvoiceService:
    """Invoice lifecycle. Status is derived on save; see derive_invoice_status."""

    @staticmethod
    def next_invoice_number(year=None):
        """INV-{year}-{n:04d} from a locked per-year counter. Caller holds the transaction."""
        year = year or timezone.localdate().year
        prefix = f"{settings.SCHOOL_LEDGER['INVOICE_NUMBER_PREFIX']}-{year}-"

        sequence = InvoiceSequence.objects.select_for_update().filter(year=year).first()
        if sequence is None:
            try:
                with transaction.atomic():
                    sequence = InvoiceSequence.objects.create(
                        year=year,
                        last_number=Invoice.objects.filter(invoice_number__startswith=prefix).count(),
                    )
            except IntegrityError:
                pass
            sequence = InvoiceSequence.objects.select_for_update().get(year=year)

        sequence.last_number += 1
        sequence.save(update_fields=['last_number'])
        return f"{prefix}{sequence.last_number:04d}"

    @staticmethod
    def _clean_items(items):
        if not items:
            raise ValidationError("Invoice must have at least one item")

        cleaned = []
        for index, item in enumerate(items, start=1):
            fee = _optional(FeeDefinition, item.get('fee_id', item.get('fee')), 'Fee')
            amount = item.get('amount')
            if amount in (None, '') and fee is not None:
                amount = fee.amount
            amount = to_money(amount, field=f"items[{index}].amount")
            if amount < 0:
                raise ValidationError(f"Item {index}: amount cannot be negative")

            quantity = item.get('quantity', 1)
            try:
                quantity = int(quantity)
            except (TypeError, ValueError):
                raise ValidationError(f"Item {index}: quantity must be a whole number")
            if quantity < 1:
                raise ValidationError(f"Item {index}: quantity must be at least 1")

            description = item.get('description') or ''
            if not description and fee is not None:
                description = fee.description or f"{fee.get_fee_type_display()} fee"
            if not description:
                raise ValidationError(f"Item {index}: description is required")

            cleaned.append({'fee': fee, 'description': description, 'amount': amount, 'quantity': quantity})
        return cleaned

    @staticmethod
    def _check_dates(issue_date, due_date):
        if not issue_date or not due_date:
            raise ValidationError("issue_date and due_date are required")
        if due_date < issue_date:
            raise ValidationError("Due date cannot be before issue date")

    @staticmethod
    def _replace_items(invoice, items):
        invoice.items.all().delete()
        total = ZERO
        for item in items:
            line = InvoiceItem.objects.create(invoice=invoice, **item)
            total += line.total
        return total

    @staticmethod
    def create_invoice(student_id, issue_date, due_date, items, notes='', school_id=None, class_id=None,
                       created_by=None, request=None):
        InvoiceService._check_dates(issue_date, due_date)
        cleaned = InvoiceService._clean_items(items)
        student = _get_or_404(Student, student_id, 'Student')
        school = _optional(School, school_id, 'School') or student.school
        school_class = _optional(SchoolClass, class_id, 'Class') or student.school_class

        with transaction.atomic():
            invoice = Invoice.objects.create(
                invoice_number=InvoiceService.next_invoice_number(),
                student=student,
                issue_date=issue_date,
                due_date=due_date,
                notes=notes or '',
                school=school,
                school_class=school_class,
                created_by=created_by,
                base_status='draft',
                status='draft',
            )
            invoice.total_amount = InvoiceService._replace_items(invoice, cleaned)
            invoice.save(update_fields=['total_amount'])
            log_action(created_by, 'create', invoice, f"Created invoice {invoice.invoice_number}",
                       changes={'total_amount': invoice.total_amount}, request=request)

        logger.info(f"✅ Invoice {invoice.invoice_number} created for {student.admission_number}")
        return invoice

    @staticmethod
    def _lock(invoice_id):
        try:
            return Invoice.objects.select_for_update().get(pk=invoice_id)
        except (Invoice.DoesNotExist, ValueError):
            raise NotFound("Invoice not found")

    @staticmethod
    def update_invoice(invoice_id, user=None, request=None, **changes):
        with transaction.atomic():
            invoice = InvoiceService._lock(invoice_id)
            before = {'total_amount': invoice.total_amount, 'status': invoice.status}

            if invoice.status == 'cancelled' and ('items' in changes or 'status' in changes):
                raise ConflictError("Cannot change items or status of a cancelled invoice")

            if 'status' in changes and changes['status']:
                if changes['status'] not in ('draft', 'sent'):
                    raise ValidationError("Status can only be set to draft or sent; other statuses are derived")
                invoice.base_status = changes['status']

            issue_date = changes.get('issue_date') or invoice.issue_date
            due_date = changes.get('due_date') or invoice.due_date
            InvoiceService._check_dates(issue_date, due_date)
            invoice.issue_date = issue_date
            invoice.due_date = due_date

            if 'notes' in changes:
                invoice.notes = changes['notes'] or ''
            if 'school_id' in changes:
                invoice.school = _optional(School, changes['school_id'], 'School')
            if 'class_id' in changes:
                invoice.school_class = _optional(SchoolClass, changes['class_id'], 'Class')

            if changes.get('items') is not None:
                cleaned = InvoiceService._clean_items(changes['items'])
                new_total = sum((item['amount'] * item['quantity'] for item in cleaned), ZERO)
                if new_total < invoice.amount_paid:
                    raise ValidationError(
                        f"Invoice total {new_total:.2f} cannot be less than the amount already paid "
                        f"({invoice.amount_paid:.2f})"
                    )
                invoice.total_amount = InvoiceService._replace_items(invoice, cleaned)

            invoice.save()

            if invoice.status == 'paid' and before['status'] != 'paid':
                # items now match what was already paid; receipt the last payment
                latest = invoice.payment_history.order_by('-date', '-id').first()
                if latest is not None and latest.receipt_id is None:
                    InvoiceCharge(invoice).settle(latest, issued_by=user)

            log_action(user, 'update', invoice, f"Updated invoice {invoice.invoice_number}",
                       changes={'before': before,
                                'after': {'total_amount': invoice.total_amount, 'status': invoice.status}},
                       request=request)
        return invoice

    @staticmethod
    def mark_as_sent(invoice_id, user=None, request=None):
        with transaction.atomic():
            invoice = InvoiceService._lock(invoice_id)
            if invoice.status == 'cancelled':
                raise ConflictError("Cannot send a cancelled invoice")
            invoice.base_status = 'sent'
            invoice.save(update_fields=['base_status'])
            log_action(user, 'send', invoice, f"Marked invoice {invoice.invoice_number} as sent", request=request)
        return invoice

    @staticmethod
    def mark_as_paid(invoice_id, amount, payment_date=None, method=None, reference='', notes='',
                     user=None, request=None):
        """Apply a payment to an invoice. Returns (invoice, PostingResult)."""
        _check_method(method)
        try:
            invoice = Invoice.objects.get(pk=invoice_id)
        except (Invoice.DoesNotExist, ValueError):
            raise NotFound("Invoice not found")

        with transaction.atomic():
            source = InvoiceCharge(invoice)
            result = Ledger.post(
                source,
                amount,
                issued_by=user,
                date=payment_date,
                method=method,
                reference=reference,
                notes=notes,
                recorded_by=user,
            )
            invoice = source.invoice
            log_action(user, 'payment', invoice,
                       f"Recorded payment of {result.entry.amount} on invoice {invoice.invoice_number}",
                       changes={'amount': result.entry.amount, 'amount_paid': invoice.amount_paid,
                                'status': invoice.status}, request=request)
            if result.receipt:
                log_action(user, 'receipt', result.receipt,
                           f"Receipt {result.receipt.receipt_number} issued for invoice {invoice.invoice_number}",
                           changes={'amount': result.receipt.amount}, request=request)

        logger.info(f"✅ Invoice {invoice.invoice_number} payment {result.entry.amount} -> {invoice.status}")
        return invoice, result

    @staticmethod
    def cancel_invoice(invoice_id, reason=None, user=None, request=None):
        with transaction.atomic():
            invoice = InvoiceService._lock(invoice_id)
            if invoice.status == 'paid':
                raise ConflictError("Cannot cancel a paid invoice")
            if invoice.status == 'cancelled':
                return invoice

            invoice.status = 'cancelled'
            if reason:
                invoice.notes = f"{invoice.notes}\nCancellation reason: {reason}".strip()
            invoice.save(update_fields=['status', 'notes'])
            log_action(user, 'cancel', invoice, f"Cancelled invoice {invoice.invoice_number}",
                       changes={'reason': reason or ''}, request=request)

        logger.info(f"🚫 Invoice {invoice.invoice_number} cancelled")
        return invoice

    @staticmethod
    def delete_invoice(invoice_id, user=None, request=None):
        with transaction.atomic():
            invoice = InvoiceService._lock(invoice_id)
            if invoice.status == 'paid':
                raise ConflictError("Cannot delete a paid invoice")
            log_action(user, 'delete', invoice, f"Deleted invoice {invoice.invoice_number}",
                       changes={'total_amount': invoice.total_amount, 'amount_paid': invoice.amount_paid},
                       request=request)
            invoice.delete()

    @staticmethod
    def get_invoices_summary(school_id=None):
        invoices = Invoice.objects.all()
        if school_id:
            invoices = invoices.filter(school_id=school_id)

        status_counts = {
            status: Count('id', filter=Q(status=status))
            for status, _ in Invoice.STATUS_CHOICES
        }
        summary = invoices.aggregate(
            total=Count('id'),
            sum_amount=Coalesce(Sum('total_amount'), Value(ZERO), output_field=MONEY),
            sum_paid=Coalesce(Sum('amount_paid'), Value(ZERO), output_field=MONEY),
            sum_balance=Coalesce(Sum('balance'), Value(ZERO), output_field=MONEY),
            **status_counts
        )
        summary['total_amount'] = summary.pop('sum_amount')
        summary['total_paid'] = summary.pop('sum_paid')
        summary['total_balance'] = summary.pop('sum_balance')
        return summary

    @staticmethod
    def refresh_statuses(today=None):
        """Re-derive status of every open invoice. Returns how many changed."""
        today = today or timezone.localdate()
        changed = 0
        with transaction.atomic():
            open_invoices = Invoice.objects.select_for_update().exclude(status__in=['cancelled', 'paid'])
            for invoice in open_invoices:
                balance = invoice.total_amount - invoice.amount_paid
                status = derive_invoice_status(
                    balance, invoice.amount_paid, invoice.due_date, invoice.base_status, today=today
                )
                if status != invoice.status or balance != invoice.balance:
                    Invoice.objects.filter(pk=invoice.pk).update(
                        status=status, balance=balance, updated_at=timezone.now()
                    )
                    changed += 1
        if changed:
            logger.info(f"🔄 {changed} invoice status(es) refreshed")
        return changed

    @staticmethod
    def render_invoice_text(invoice, message=None):
        currency = settings.SCHOOL_LEDGER['CURRENCY_LABEL']
        lines = [
            f"Invoice {invoice.invoice_number}",
            f"Student: {invoice.student.full_name} ({invoice.student.admission_number})",
            f"Issue date: {invoice.issue_date:%B %d, %Y}",
            f"Due date: {invoice.due_date:%B %d, %Y}",
            "",
        ]
        if message:
            lines.extend([message, ""])
        for item in invoice.items.all():
            lines.append(f"- {item.description}: {item.quantity} x {item.amount:,.2f} = {item.total:,.2f}")
        lines.extend([
            "",
            f"Total: {invoice.total_amount:,.2f} {currency}",
            f"Paid: {invoice.amount_paid:,.2f} {currency}",
            f"Balance: {invoice.balance:,.2f} {currency}",
        ])
        return "\n".join(lines)

    @staticmethod
    def send_invoice_email(invoice_id, to, cc=None, message=None, user=None, request=None):
        if not to:
            raise ValidationError("Recipient email address is required")
        try:
            invoice = Invoice.objects.select_related('student').get(pk=invoice_id)
        except (Invoice.DoesNotExist, ValueError):
            raise NotFound("Invoice not found")
        if invoice.status == 'cancelled':
            raise ConflictError("Cannot send a cancelled invoice")

        email = EmailMessage(
            subject=f"Invoice {invoice.invoice_number}",
            body=InvoiceService.render_invoice_text(invoice, message),
            from_email=settings.DEFAULT_FROM_EMAIL,
            to=[to],
            cc=cc or [],
        )
        email.send(fail_silently=False)
        logger.info(f"📧 Invoice {invoice.invoice_number} e-mailed to {to}")

        return InvoiceService.mark_as_sent(invoice.pk, user=user, request=request)


class ReportService:

    @staticmethod
    def _date_range(start_date, end_date):
        if start_date and end_date and end_date < start_date:
            raise ValidationError("end_date cannot be before start_date")

    @staticmethod
    def collections(start_date=None, end_date=None):
        """Fee payments and invoice payments in the range, as plain rows"""
        ReportService._date_range(start_date, end_date)

        payments = Payment.objects.select_related('student', 'fee')
        history = PaymentHistory.objects.select_related('invoice__student')
        if start_date:
            payments = payments.filter(payment_date__gte=start_date)
            history = history.filter(date__gte=start_date)
        if end_date:
            payments = payments.filter(payment_date__lte=end_date)
            history = history.filter(date__lte=end_date)

        rows = []
        for p in payments:
            rows.append({
                'date': p.payment_date,
                'source': 'fee',
                'reference': f"PAY-{p.pk}",
                'student': p.student.full_name,
                'admission_number': p.student.admission_number,
                'description': p.fee.get_fee_type_display(),
                'method': p.payment_method,
                'amount': p.amount_paid,
            })
        for h in history:
            rows.append({
                'date': h.date,
                'source': 'invoice',
                'reference': h.invoice.invoice_number,
                'student': h.invoice.student.full_name,
                'admission_number': h.invoice.student.admission_number,
                'description': h.notes or 'Invoice payment',
                'method': h.method,
                'amount': h.amount,
            })
        rows.sort(key=lambda row: (row['date'], row['reference']))
        return rows

    @staticmethod
    def summary(start_date=None, end_date=None):
        """Totals per payment method across fee and invoice payments"""
        ReportService._date_range(start_date, end_date)

        payments = Payment.objects.all()
        history = PaymentHistory.objects.all()
        if start_date:
            payments = payments.filter(payment_date__gte=start_date)
            history = history.filter(date__gte=start_date)
        if end_date:
            payments = payments.filter(payment_date__lte=end_date)
            history = history.filter(date__lte=end_date)

        totals = {}
        for row in payments.values('payment_method').annotate(total=Sum('amount_paid'), count=Count('id')):
            entry = totals.setdefault(row['payment_method'], {'total': ZERO, 'count': 0})
            entry['total'] += row['total']
            entry['count'] += row['count']
        for row in history.values('method').annotate(total=Sum('amount'), count=Count('id')):
            entry = totals.setdefault(row['method'], {'total': ZERO, 'count': 0})
            entry['total'] += row['total']
            entry['count'] += row['count']

        methods = [
            {'method': method, 'total': values['total'], 'count': values['count']}
            for method, values in sorted(totals.items())
        ]
        return {
            'start_date': start_date,
            'end_date': end_date,
            'methods': methods,
            'total': sum((m['total'] for m in methods), ZERO),
        }
