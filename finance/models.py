from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from users.models import User, Student
from .utils import derive_invoice_status


FEE_TYPE_CHOICES = [
    ('registration', 'Registration'),
    ('admission', 'Admission'),
    ('tuition', 'Tuition'),
    ('exam', 'Exam'),
    ('other', 'Other'),
]

PAYMENT_METHOD_CHOICES = [
    ('cash', 'Cash'),
    ('bank_transfer', 'Bank Transfer'),
    ('card', 'Card'),
    ('mobile_money', 'Mobile Money'),
    ('cheque', 'Cheque'),
    ('other', 'Other'),
]


class FeeDefinition(models.Model):
    """A chargeable amount for a category, optionally narrowed to a class and academic year"""

    FEE_TYPE_CHOICES = FEE_TYPE_CHOICES

    category = models.ForeignKey('academics.Category', on_delete=models.CASCADE, related_name='fees')
    # null class = every class in the category
    school_class = models.ForeignKey('academics.SchoolClass', on_delete=models.CASCADE, null=True, blank=True, related_name='fees')
    fee_type = models.CharField(max_length=20, choices=FEE_TYPE_CHOICES)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    description = models.TextField(blank=True)
    academic_year = models.ForeignKey('academics.AcademicYear', on_delete=models.SET_NULL, null=True, blank=True, related_name='fees')
    school = models.ForeignKey('academics.School', on_delete=models.CASCADE, null=True, blank=True, related_name='fees')
    effective_date = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        verbose_name = 'Fee Definition'
        verbose_name_plural = 'Fee Definitions'
        constraints = [
            models.UniqueConstraint(
                fields=['category', 'school_class', 'fee_type', 'academic_year'],
                name='unique_fee_scope',
            ),
            models.CheckConstraint(condition=Q(amount__gte=0), name='fee_amount_not_negative'),
        ]

    def __str__(self):
        scope = self.school_class.name if self.school_class_id else 'All classes'
        return f"{self.get_fee_type_display()} - {scope} - ₦{self.amount}"


class Payment(models.Model):
    """A single payment applied toward a fee definition for a student"""

    PAYMENT_METHOD_CHOICES = PAYMENT_METHOD_CHOICES

    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='payments')
    fee = models.ForeignKey(FeeDefinition, on_delete=models.PROTECT, related_name='payments')
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2)
    payment_date = models.DateField(default=timezone.localdate)
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, default='cash')
    transaction_reference = models.CharField(max_length=100, blank=True)
    installment_number = models.PositiveIntegerField(default=1)
    remarks = models.TextField(blank=True)
    recorded_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='recorded_payments')
    school = models.ForeignKey('academics.School', on_delete=models.SET_NULL, null=True, blank=True, related_name='payments')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-payment_date', '-id']
        verbose_name = 'Payment'
        verbose_name_plural = 'Payments'
        indexes = [
            models.Index(fields=['student', 'fee'], name='finance_pay_student_fee_idx'),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount_paid__gt=0), name='payment_amount_positive'),
        ]

    def __str__(self):
        return f"Payment #{self.pk} - {self.student.admission_number} - ₦{self.amount_paid}"

    @property
    def has_receipt(self):
        return Receipt.objects.filter(payment_id=self.pk).exists()


class Receipt(models.Model):
    """Immutable proof of payment. Issued to a student or to an applicant"""

    RECEIPT_TYPE_CHOICES = FEE_TYPE_CHOICES

    student = models.ForeignKey(Student, on_delete=models.PROTECT, null=True, blank=True, related_name='receipts')
    registration = models.ForeignKey('admissions.Registration', on_delete=models.PROTECT, null=True, blank=True, related_name='receipts')
    payment = models.OneToOneField(Payment, on_delete=models.PROTECT, null=True, blank=True, related_name='receipt')
    receipt_type = models.CharField(max_length=20, choices=RECEIPT_TYPE_CHOICES)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    issued_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='issued_receipts')
    date_issued = models.DateField(default=timezone.localdate)
    venue = models.CharField(max_length=200, blank=True)
    exam_date = models.DateField(null=True, blank=True)
    logo_url = models.CharField(max_length=255, blank=True)
    school_class = models.ForeignKey('academics.SchoolClass', on_delete=models.SET_NULL, null=True, blank=True, related_name='receipts')
    school = models.ForeignKey('academics.School', on_delete=models.SET_NULL, null=True, blank=True, related_name='receipts')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-date_issued', '-id']
        verbose_name = 'Receipt'
        verbose_name_plural = 'Receipts'
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(student__isnull=False, registration__isnull=True)
                    | Q(student__isnull=True, registration__isnull=False)
                ),
                name='receipt_single_holder',
            ),
            models.CheckConstraint(condition=Q(amount__gt=0), name='receipt_amount_positive'),
        ]

    def __str__(self):
        return f"{self.receipt_number} - ₦{self.amount}"

    @property
    def receipt_number(self):
        if self.pk is None:
            return None
        prefix = settings.SCHOOL_LEDGER['RECEIPT_NUMBER_PREFIX']
        return f"{prefix}-{self.pk:06d}"

    @property
    def holder(self):
        return self.student or self.registration

    @property
    def document_type(self):
        return f"Official {self.get_receipt_type_display()} Receipt"


class Invoice(models.Model):
    """Multi-line billable document with a derived status"""

    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('sent', 'Sent'),
        ('paid', 'Paid'),
        ('overdue', 'Overdue'),
        ('cancelled', 'Cancelled'),
        ('partially_paid', 'Partially Paid'),
    ]

    BASE_STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('sent', 'Sent'),
    ]

    invoice_number = models.CharField(max_length=50, unique=True, editable=False)
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='invoices')
    issue_date = models.DateField()
    due_date = models.DateField()
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    balance = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='draft')
    # Last explicitly chosen status, the fallback of the derivation
    base_status = models.CharField(max_length=10, choices=BASE_STATUS_CHOICES, default='draft')
    notes = models.TextField(blank=True)
    school = models.ForeignKey('academics.School', on_delete=models.SET_NULL, null=True, blank=True, related_name='invoices')
    school_class = models.ForeignKey('academics.SchoolClass', on_delete=models.SET_NULL, null=True, blank=True, related_name='invoices')
    created_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='created_invoices')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        verbose_name = 'Invoice'
        verbose_name_plural = 'Invoices'
        indexes = [
            models.Index(fields=['status', 'due_date'], name='finance_inv_status_due_idx'),
        ]

    def __str__(self):
        return f"{self.invoice_number} - {self.student.admission_number}"

    @property
    def is_cancelled(self):
        return self.status == 'cancelled'

    def refresh_status(self, today=None):
        """Recompute balance and, unless cancelled, status. Does not save."""
        self.balance = (self.total_amount or Decimal('0')) - (self.amount_paid or Decimal('0'))
        if self.status != 'cancelled':
            self.status = derive_invoice_status(
                self.balance, self.amount_paid, self.due_date, self.base_status, today=today
            )
        return self.status

    def save(self, *args, **kwargs):
        self.refresh_status()
        update_fields = kwargs.get('update_fields')
        if update_fields is not None:
            kwargs['update_fields'] = set(update_fields) | {'balance', 'status', 'updated_at'}
        super().save(*args, **kwargs)


class InvoiceItem(models.Model):
    """Invoice line item"""
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='items')
    fee = models.ForeignKey(FeeDefinition, on_delete=models.PROTECT, null=True, blank=True, related_name='invoice_items')
    description = models.CharField(max_length=255)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField(default=1)
    total = models.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        ordering = ['id']
        verbose_name = 'Invoice Item'
        verbose_name_plural = 'Invoice Items'
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gte=1), name='invoice_item_quantity_min_one'),
        ]

    def __str__(self):
        return f"{self.description} x{self.quantity}"

    def save(self, *args, **kwargs):
        self.total = self.amount * self.quantity
        super().save(*args, **kwargs)


class PaymentHistory(models.Model):
    """A payment applied to an invoice"""

    PAYMENT_METHOD_CHOICES = PAYMENT_METHOD_CHOICES

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name='payment_history')
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    date = models.DateField(default=timezone.localdate)
    method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, default='cash')
    reference = models.CharField(max_length=100, blank=True)
    receipt = models.ForeignKey(Receipt, on_delete=models.PROTECT, null=True, blank=True, related_name='invoice_payments')
    notes = models.TextField(blank=True)
    recorded_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='recorded_invoice_payments')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-date', '-id']
        verbose_name = 'Payment History'
        verbose_name_plural = 'Payment History'

    def __str__(self):
        return f"{self.invoice.invoice_number} - ₦{self.amount} on {self.date}"


class InvoiceSequence(models.Model):
    """Per-year counter behind invoice numbers"""
    year = models.PositiveIntegerField(unique=True)
    last_number = models.PositiveIntegerField(default=0)

    class Meta:
        verbose_name = 'Invoice Sequence'
        verbose_name_plural = 'Invoice Sequences'

    def __str__(self):
        return f"{self.year}: {self.last_number}"
