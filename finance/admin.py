from django.contrib import admin
from .models import FeeDefinition, Payment, Receipt, Invoice, InvoiceItem, PaymentHistory, InvoiceSequence


@admin.register(FeeDefinition)
class FeeDefinitionAdmin(admin.ModelAdmin):
    list_display = ['fee_type', 'category', 'school_class', 'academic_year', 'amount', 'school']
    list_filter = ['fee_type', 'category', 'academic_year', 'school']
    search_fields = ['description', 'category__name', 'school_class__name']
    raw_id_fields = ['category', 'school_class', 'academic_year', 'school']


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ['id', 'student', 'fee', 'amount_paid', 'payment_method', 'installment_number', 'payment_date']
    list_filter = ['payment_method', 'payment_date', 'school']
    search_fields = ['transaction_reference', 'student__admission_number', 'student__last_name']
    readonly_fields = ['created_at']
    raw_id_fields = ['student', 'fee', 'recorded_by', 'school']
    date_hierarchy = 'payment_date'


@admin.register(Receipt)
class ReceiptAdmin(admin.ModelAdmin):
    list_display = ['receipt_number', 'receipt_type', 'student', 'registration', 'amount', 'date_issued', 'issued_by']
    list_filter = ['receipt_type', 'date_issued', 'school']
    search_fields = ['student__admission_number', 'registration__application_number']
    readonly_fields = ['created_at']
    raw_id_fields = ['student', 'registration', 'payment', 'issued_by', 'school_class', 'school']
    date_hierarchy = 'date_issued'

    def has_change_permission(self, request, obj=None):
        return False


class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0
    readonly_fields = ['total']
    raw_id_fields = ['fee']


class PaymentHistoryInline(admin.TabularInline):
    model = PaymentHistory
    extra = 0
    readonly_fields = ['amount', 'date', 'method', 'reference', 'receipt', 'recorded_by']
    can_delete = False


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ['invoice_number', 'student', 'total_amount', 'amount_paid', 'balance', 'status', 'due_date']
    list_filter = ['status', 'school', 'issue_date']
    search_fields = ['invoice_number', 'student__admission_number', 'student__last_name']
    readonly_fields = ['invoice_number', 'total_amount', 'amount_paid', 'balance', 'status', 'created_at', 'updated_at']
    raw_id_fields = ['student', 'school', 'school_class', 'created_by']
    inlines = [InvoiceItemInline, PaymentHistoryInline]
    date_hierarchy = 'created_at'


@admin.register(InvoiceSequence)
class InvoiceSequenceAdmin(admin.ModelAdmin):
    list_display = ['year', 'last_number']
