import logging

from django.db.models import Prefetch
from rest_framework import viewsets, status, filters
from rest_framework.decorators import action
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response
from django_filters.rest_framework import DjangoFilterBackend

from .exceptions import ValidationError
from .filters import InvoiceFilter
from .models import Invoice, PaymentHistory
from .serializers import (
    InvoiceSerializer, InvoiceCreateSerializer, InvoiceUpdateSerializer, MarkPaidSerializer,
    CancelInvoiceSerializer, SendInvoiceEmailSerializer, InvoiceSummarySerializer
)
from .services import InvoiceService
from .views import FinanceMutationMixin

logger = logging.getLogger(__name__)


class InvoicePagination(PageNumberPagination):
    page_size = 50
    page_size_query_param = 'limit'
    max_page_size = 500


class InvoiceViewSet(FinanceMutationMixin, viewsets.ModelViewSet):
    """Invoice operations"""
    serializer_class = InvoiceSerializer
    pagination_class = InvoicePagination
    filter_backends = [DjangoFilterBackend, filters.SearchFilter, filters.OrderingFilter]
    filterset_class = InvoiceFilter
    search_fields = ['invoice_number', 'notes']
    ordering_fields = ['created_at', 'issue_date', 'due_date', 'total_amount', 'balance']
    lookup_value_regex = r'\d+'
    staff_actions = [
        'create', 'update', 'partial_update', 'destroy',
        'mark_sent', 'mark_paid', 'cancel', 'send_email', 'summary'
    ]

    def get_queryset(self):
        queryset = Invoice.objects.select_related(
            'student', 'school', 'school_class', 'created_by'
        ).prefetch_related(
            'items',
            Prefetch('payment_history', queryset=PaymentHistory.objects.select_related('receipt', 'recorded_by')),
        )
        return self.limit_to_owned(queryset)

    def create(self, request, *args, **kwargs):
        serializer = InvoiceCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        invoice = InvoiceService.create_invoice(
            data['student_id'],
            data['issue_date'],
            data['due_date'],
            [dict(item) for item in data['items']],
            notes=data.get('notes', ''),
            school_id=data.get('school_id'),
            class_id=data.get('class_id'),
            created_by=request.user,
            request=request,
        )
        return Response(InvoiceSerializer(invoice).data, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop('partial', False)
        serializer = InvoiceUpdateSerializer(data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        changes = dict(serializer.validated_data)
        if 'items' in changes:
            changes['items'] = [dict(item) for item in changes['items']]
        invoice = InvoiceService.update_invoice(kwargs['pk'], user=request.user, request=request, **changes)
        return Response(InvoiceSerializer(invoice).data)

    def destroy(self, request, *args, **kwargs):
        InvoiceService.delete_invoice(kwargs['pk'], user=request.user, request=request)
        return Response({'message': 'Invoice deleted successfully'})

    @action(detail=True, methods=['put'], url_path='mark-sent', url_name='mark-sent')
    def mark_sent(self, request, pk=None):
        invoice = InvoiceService.mark_as_sent(pk, user=request.user, request=request)
        return Response(InvoiceSerializer(invoice).data)

    @action(detail=True, methods=['put'], url_path='mark-paid', url_name='mark-paid')
    def mark_paid(self, request, pk=None):
        """Record a payment against the invoice"""
        serializer = MarkPaidSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        invoice, result = InvoiceService.mark_as_paid(
            pk,
            data['amount'],
            payment_date=data.get('payment_date'),
            method=data.get('payment_method'),
            reference=data.get('reference', ''),
            notes=data.get('notes', ''),
            user=request.user,
            request=request,
        )
        invoice = self.get_queryset().get(pk=invoice.pk)
        return Response(InvoiceSerializer(invoice).data)

    @action(detail=True, methods=['put'], url_path='cancel', url_name='cancel')
    def cancel(self, request, pk=None):
        serializer = CancelInvoiceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        invoice = InvoiceService.cancel_invoice(
            pk, reason=serializer.validated_data.get('reason'), user=request.user, request=request
        )
        return Response(InvoiceSerializer(invoice).data)

    @action(detail=True, methods=['post'], url_path='send-email', url_name='send-email')
    def send_email(self, request, pk=None):
        serializer = SendInvoiceEmailSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        invoice = InvoiceService.send_invoice_email(
            pk, data['to'], cc=data.get('cc'), message=data.get('message'),
            user=request.user, request=request
        )
        return Response({
            'message': f"Invoice {invoice.invoice_number} sent to {data['to']}",
            'data': InvoiceSerializer(invoice).data
        })

    @action(detail=False, methods=['get'])
    def summary(self, request):
        """Counts per status and money totals, optionally for one school"""
        school_id = request.query_params.get('school_id')
        if school_id and not school_id.isdigit():
            raise ValidationError("school_id must be an integer")
        summary = InvoiceService.get_invoices_summary(school_id=school_id)
        return Response(InvoiceSummarySerializer(summary).data)
