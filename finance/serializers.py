from rest_framework import serializers

from .models import (
    PAYMENT_METHOD_CHOICES,
    FeeDefinition, Payment, Receipt, Invoice, InvoiceItem, PaymentHistory
)
from .utils import number_to_words


def format_long_date(value):
    """January 5, 2025"""
    if value is None:
        return None
    return f"{value:%B} {value.day}, {value.year}"


def receipt_for(payment):
    try:
        return payment.receipt
    except Receipt.DoesNotExist:
        return None


# ==============================================
# FEES
# ==============================================

class FeeDefinitionSerializer(serializers.ModelSerializer):
    """Fee definition as returned by the API"""
    category_name = serializers.CharField(source='category.name', read_only=True)
    class_name = serializers.CharField(source='school_class.name', read_only=True, default=None)
    academic_year_label = serializers.CharField(source='academic_year.year', read_only=True, default=None)

    class Meta:
        model = FeeDefinition
        fields = [
            'id', 'category', 'category_name', 'school_class', 'class_name', 'fee_type',
            'amount', 'description', 'academic_year', 'academic_year_label', 'school',
            'effective_date', 'created_at', 'updated_at'
        ]
        read_only_fields = fields
        validators = []


class FeeDefinitionWriteSerializer(serializers.Serializer):
    category_id = serializers.IntegerField()
    class_id = serializers.IntegerField(source='school_class_id', required=False, allow_null=True)
    fee_type = serializers.CharField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    description = serializers.CharField(required=False, allow_blank=True)
    academic_year_id = serializers.IntegerField(required=False, allow_null=True)
    school_id = serializers.IntegerField(required=False, allow_null=True)
    effective_date = serializers.DateField(required=False, allow_null=True)


class FeeScopeQuerySerializer(serializers.Serializer):
    category_id = serializers.IntegerField()
    class_id = serializers.IntegerField(required=False, allow_null=True)
    academic_year_id = serializers.IntegerField(required=False, allow_null=True)
    fee_type = serializers.CharField(required=False, allow_blank=True)


class OutstandingFeeSerializer(serializers.Serializer):
    """Flattens {'fee', 'amount_paid', 'outstanding_amount'} rows"""

    def to_representation(self, row):
        data = FeeDefinitionSerializer(row['fee']).data
        data['amount_paid'] = row['amount_paid']
        data['outstanding_amount'] = row['outstanding_amount']
        return data


# ==============================================
# PAYMENTS
# ==============================================

class PaymentSerializer(serializers.ModelSerializer):
    """Payment serializer"""
    student_name = serializers.CharField(source='student.full_name', read_only=True)
    admission_number = serializers.CharField(source='student.admission_number', read_only=True)
    fee_type = serializers.CharField(source='fee.fee_type', read_only=True)
    fee_amount = serializers.DecimalField(source='fee.amount', max_digits=12, decimal_places=2, read_only=True)
    recorded_by_name = serializers.SerializerMethodField()
    has_receipt = serializers.SerializerMethodField()
    receipt_id = serializers.SerializerMethodField()
    receipt_number = serializers.SerializerMethodField()

    class Meta:
        model = Payment
        fields = [
            'id', 'student', 'student_name', 'admission_number', 'fee', 'fee_type', 'fee_amount',
            'amount_paid', 'payment_date', 'payment_method', 'transaction_reference',
            'installment_number', 'remarks', 'recorded_by', 'recorded_by_name', 'school',
            'has_receipt', 'receipt_id', 'receipt_number', 'created_at'
        ]
        read_only_fields = fields

    def get_recorded_by_name(self, obj):
        return obj.recorded_by.get_full_name() if obj.recorded_by else None

    def get_has_receipt(self, obj):
        return receipt_for(obj) is not None

    def get_receipt_id(self, obj):
        receipt = receipt_for(obj)
        return receipt.pk if receipt else None

    def get_receipt_number(self, obj):
        receipt = receipt_for(obj)
        return receipt.receipt_number if receipt else None


class PaymentCreateSerializer(serializers.Serializer):
    student_id = serializers.IntegerField()
    fee_id = serializers.IntegerField()
    amount_paid = serializers.DecimalField(max_digits=12, decimal_places=2)
    payment_date = serializers.DateField(required=False, allow_null=True)
    installment_number = serializers.IntegerField(required=False, allow_null=True)
    payment_method = serializers.ChoiceField(choices=PAYMENT_METHOD_CHOICES, required=False, allow_null=True)
    transaction_reference = serializers.CharField(required=False, allow_blank=True, max_length=100)
    remarks = serializers.CharField(required=False, allow_blank=True)
    school_id = serializers.IntegerField(required=False, allow_null=True)


class PaymentUpdateSerializer(serializers.Serializer):
    amount_paid = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    payment_date = serializers.DateField(required=False)
    installment_number = serializers.IntegerField(required=False)
    payment_method = serializers.ChoiceField(choices=PAYMENT_METHOD_CHOICES, required=False)
    transaction_reference = serializers.CharField(required=False, allow_blank=True, max_length=100)
    remarks = serializers.CharField(required=False, allow_blank=True)


class FeeSummaryRowSerializer(serializers.Serializer):
    fee_id = serializers.IntegerField()
    fee_type = serializers.CharField()
    description = serializers.CharField()
    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    amount_paid = serializers.DecimalField(max_digits=12, decimal_places=2)
    remaining_amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    is_paid = serializers.BooleanField()


class StudentPaymentSummarySerializer(serializers.Serializer):
    student_id = serializers.IntegerField()
    payments = PaymentSerializer(many=True)
    fee_summary = FeeSummaryRowSerializer(many=True)
    total_paid = serializers.DecimalField(max_digits=14, decimal_places=2)
    total_fees = serializers.DecimalField(max_digits=14, decimal_places=2)
    total_remaining = serializers.DecimalField(max_digits=14, decimal_places=2)
    payment_count = serializers.IntegerField()
    is_fully_paid = serializers.BooleanField()


# ==============================================
# RECEIPTS
# ==============================================

class ReceiptSerializer(serializers.ModelSerializer):
    """Formatted receipt"""
    receipt_number = serializers.CharField(read_only=True)
    document_type = serializers.CharField(read_only=True)
    formatted_date = serializers.SerializerMethodField()
    amount_in_words = serializers.SerializerMethodField()
    holder_name = serializers.SerializerMethodField()
    admission_number = serializers.CharField(source='student.admission_number', read_only=True, default=None)
    application_number = serializers.CharField(source='registration.application_number', read_only=True, default=None)
    class_name = serializers.CharField(source='school_class.name', read_only=True, default=None)
    school_name = serializers.CharField(source='school.name', read_only=True, default=None)
    issued_by_name = serializers.SerializerMethodField()

    class Meta:
        model = Receipt
        fields = [
            'id', 'receipt_number', 'document_type', 'student', 'admission_number', 'registration',
            'application_number', 'holder_name', 'payment', 'receipt_type', 'amount', 'amount_in_words',
            'issued_by', 'issued_by_name', 'date_issued', 'formatted_date', 'venue', 'exam_date',
            'logo_url', 'school_class', 'class_name', 'school', 'school_name', 'created_at'
        ]
        read_only_fields = fields

    def get_formatted_date(self, obj):
        return format_long_date(obj.date_issued)

    def get_amount_in_words(self, obj):
        return number_to_words(obj.amount)

    def get_holder_name(self, obj):
        holder = obj.holder
        return holder.full_name if holder else None

    def get_issued_by_name(self, obj):
        return obj.issued_by.get_full_name() if obj.issued_by else None


class ReceiptCreateSerializer(serializers.Serializer):
    student_id = serializers.IntegerField(required=False, allow_null=True)
    registration_id = serializers.IntegerField(required=False, allow_null=True)
    payment_id = serializers.IntegerField(required=False, allow_null=True)
    receipt_type = serializers.CharField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    date_issued = serializers.DateField(required=False, allow_null=True)
    venue = serializers.CharField(required=False, allow_blank=True, max_length=200)
    exam_date = serializers.DateField(required=False, allow_null=True)
    logo_url = serializers.CharField(required=False, allow_blank=True, max_length=255)
    school_id = serializers.IntegerField(required=False, allow_null=True)
    class_id = serializers.IntegerField(required=False, allow_null=True)


# ==============================================
# INVOICES
# ==============================================

class InvoiceItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceItem
        fields = ['id', 'fee', 'description', 'amount', 'quantity', 'total']
        read_only_fields = fields


class InvoiceItemInputSerializer(serializers.Serializer):
    fee_id = serializers.IntegerField(required=False, allow_null=True)
    description = serializers.CharField(required=False, allow_blank=True, max_length=255)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    quantity = serializers.IntegerField(required=False, default=1)


class PaymentHistorySerializer(serializers.ModelSerializer):
    receipt_number = serializers.CharField(source='receipt.receipt_number', read_only=True, default=None)
    recorded_by_name = serializers.SerializerMethodField()

    class Meta:
        model = PaymentHistory
        fields = [
            'id', 'amount', 'date', 'method', 'reference', 'receipt', 'receipt_number',
            'notes', 'recorded_by', 'recorded_by_name', 'created_at'
        ]
        read_only_fields = fields

    def get_recorded_by_name(self, obj):
        return obj.recorded_by.get_full_name() if obj.recorded_by else None


class InvoiceSerializer(serializers.ModelSerializer):
    """Invoice with line items and payment history"""
    student_name = serializers.CharField(source='student.full_name', read_only=True)
    admission_number = serializers.CharField(source='student.admission_number', read_only=True)
    class_name = serializers.CharField(source='school_class.name', read_only=True, default=None)
    items = InvoiceItemSerializer(many=True, read_only=True)
    payment_history = PaymentHistorySerializer(many=True, read_only=True)

    class Meta:
        model = Invoice
        fields = [
            'id', 'invoice_number', 'student', 'student_name', 'admission_number', 'issue_date',
            'due_date', 'total_amount', 'amount_paid', 'balance', 'status', 'base_status', 'notes',
            'school', 'school_class', 'class_name', 'created_by', 'items', 'payment_history',
            'created_at', 'updated_at'
        ]
        read_only_fields = fields


class InvoiceCreateSerializer(serializers.Serializer):
    student_id = serializers.IntegerField()
    issue_date = serializers.DateField()
    due_date = serializers.DateField()
    items = InvoiceItemInputSerializer(many=True)
    notes = serializers.CharField(required=False, allow_blank=True)
    school_id = serializers.IntegerField(required=False, allow_null=True)
    class_id = serializers.IntegerField(required=False, allow_null=True)


class InvoiceUpdateSerializer(serializers.Serializer):
    issue_date = serializers.DateField(required=False)
    due_date = serializers.DateField(required=False)
    items = InvoiceItemInputSerializer(many=True, required=False)
    notes = serializers.CharField(required=False, allow_blank=True)
    status = serializers.CharField(required=False)
    school_id = serializers.IntegerField(required=False, allow_null=True)
    class_id = serializers.IntegerField(required=False, allow_null=True)


class MarkPaidSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    payment_date = serializers.DateField(required=False, allow_null=True)
    payment_method = serializers.ChoiceField(choices=PAYMENT_METHOD_CHOICES, required=False, allow_null=True)
    reference = serializers.CharField(required=False, allow_blank=True, max_length=100)
    notes = serializers.CharField(required=False, allow_blank=True)


class CancelInvoiceSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True)


class SendInvoiceEmailSerializer(serializers.Serializer):
    to = serializers.EmailField()
    cc = serializers.ListField(child=serializers.EmailField(), required=False)
    message = serializers.CharField(required=False, allow_blank=True)


class InvoiceSummarySerializer(serializers.Serializer):
    total = serializers.IntegerField()
    draft = serializers.IntegerField()
    sent = serializers.IntegerField()
    paid = serializers.IntegerField()
    overdue = serializers.IntegerField()
    cancelled = serializers.IntegerField()
    partially_paid = serializers.IntegerField()
    total_amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    total_paid = serializers.DecimalField(max_digits=14, decimal_places=2)
    total_balance = serializers.DecimalField(max_digits=14, decimal_places=2)


# ==============================================
# REPORTS
# ==============================================

class ReportQuerySerializer(serializers.Serializer):
    start_date = serializers.DateField(required=False, allow_null=True)
    end_date = serializers.DateField(required=False, allow_null=True)


class MethodTotalSerializer(serializers.Serializer):
    method = serializers.CharField()
    total = serializers.DecimalField(max_digits=14, decimal_places=2)
    count = serializers.IntegerField()


class CollectionsSummarySerializer(serializers.Serializer):
    start_date = serializers.DateField(allow_null=True)
    end_date = serializers.DateField(allow_null=True)
    methods = MethodTotalSerializer(many=True)
    total = serializers.DecimalField(max_digits=14, decimal_places=2)
