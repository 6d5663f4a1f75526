import django_filters

from .models import Invoice, Payment, Receipt


class PaymentFilter(django_filters.FilterSet):
    student_id = django_filters.NumberFilter(field_name='student_id')
    fee_id = django_filters.NumberFilter(field_name='fee_id')
    school_id = django_filters.NumberFilter(field_name='school_id')
    payment_date_from = django_filters.DateFilter(field_name='payment_date', lookup_expr='gte')
    payment_date_to = django_filters.DateFilter(field_name='payment_date', lookup_expr='lte')

    class Meta:
        model = Payment
        fields = ['payment_method']


class ReceiptFilter(django_filters.FilterSet):
    student_id = django_filters.NumberFilter(field_name='student_id')
    registration_id = django_filters.NumberFilter(field_name='registration_id')
    payment_id = django_filters.NumberFilter(field_name='payment_id')
    school_id = django_filters.NumberFilter(field_name='school_id')
    date_from = django_filters.DateFilter(field_name='date_issued', lookup_expr='gte')
    date_to = django_filters.DateFilter(field_name='date_issued', lookup_expr='lte')

    class Meta:
        model = Receipt
        fields = ['receipt_type']


class InvoiceFilter(django_filters.FilterSet):
    student_id = django_filters.NumberFilter(field_name='student_id')
    school_id = django_filters.NumberFilter(field_name='school_id')
    class_id = django_filters.NumberFilter(field_name='school_class_id')
    # ?status=draft&status=sent
    status = django_filters.MultipleChoiceFilter(choices=Invoice.STATUS_CHOICES)
    issue_date_from = django_filters.DateFilter(field_name='issue_date', lookup_expr='gte')
    issue_date_to = django_filters.DateFilter(field_name='issue_date', lookup_expr='lte')
    due_date_from = django_filters.DateFilter(field_name='due_date', lookup_expr='gte')
    due_date_to = django_filters.DateFilter(field_name='due_date', lookup_expr='lte')

    class Meta:
        model = Invoice
        fields = []
