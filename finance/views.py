import logging

from django.conf import settings
from django.http import HttpResponse
from django.template.loader import render_to_string
from rest_framework import viewsets, status, filters
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from django_filters.rest_framework import DjangoFilterBackend

from users.permissions import CanManageFinance, is_finance_staff, owned_student_ids
from .exceptions import NotFound
from .filters import PaymentFilter, ReceiptFilter
from .models import Payment, Receipt
from .serializers import (
    FeeDefinitionSerializer, FeeDefinitionWriteSerializer, FeeScopeQuerySerializer,
    OutstandingFeeSerializer, PaymentSerializer, PaymentCreateSerializer, PaymentUpdateSerializer,
    StudentPaymentSummarySerializer, ReceiptSerializer, ReceiptCreateSerializer, format_long_date
)
from .services import FeeCatalogService, PaymentService, ReceiptService
from .utils import number_to_words

logger = logging.getLogger(__name__)


def ensure_student_access(user, student_id):
    """Students and guardians may only look at their own records"""
    if is_finance_staff(user):
        return
    try:
        student_id = int(student_id)
    except (TypeError, ValueError):
        raise NotFound("Student not found")
    if student_id not in owned_student_ids(user):
        raise NotFound("Student not found")


class FinanceMutationMixin:
    """Reads for any signed-in user, writes and aggregates for finance staff"""
    staff_actions = ['create', 'update', 'partial_update', 'destroy']

    def get_permissions(self):
        if self.action in self.staff_actions:
            return [CanManageFinance()]
        return [IsAuthenticated()]

    def limit_to_owned(self, queryset):
        user = self.request.user
        if is_finance_staff(user):
            return queryset
        return queryset.filter(student_id__in=owned_student_ids(user))


class FeeDefinitionViewSet(FinanceMutationMixin, viewsets.ModelViewSet):
    """Fee catalog: one chargeable amount per category / class / fee type / year"""
    serializer_class = FeeDefinitionSerializer
    pagination_class = None
    filter_backends = []
    lookup_value_regex = r'\d+'

    def get_queryset(self):
        params = self.request.query_params
        return FeeCatalogService.list_fees(
            school_id=params.get('school_id'),
            fee_type=params.get('fee_type'),
            category_id=params.get('category_id'),
            class_id=params.get('class_id'),
        )

    def create(self, request, *args, **kwargs):
        serializer = FeeDefinitionWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        fee = FeeCatalogService.create_fee_definition(
            user=request.user, request=request, **serializer.validated_data
        )
        return Response({
            'id': fee.id,
            'message': 'Fee created successfully',
            'data': FeeDefinitionSerializer(fee).data
        }, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop('partial', False)
        serializer = FeeDefinitionWriteSerializer(data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        fee = FeeCatalogService.update_fee_definition(
            kwargs['pk'], user=request.user, request=request, **serializer.validated_data
        )
        return Response({
            'message': 'Fee updated successfully',
            'data': FeeDefinitionSerializer(fee).data
        })

    def destroy(self, request, *args, **kwargs):
        FeeCatalogService.delete_fee_definition(kwargs['pk'], user=request.user, request=request)
        return Response({'message': 'Fee deleted successfully'})

    @action(detail=False, methods=['get'], url_path='scope', url_name='scope')
    def scope(self, request):
        """Most specific fee for ?category_id&class_id&academic_year_id&fee_type"""
        query = FeeScopeQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        params = query.validated_data
        fee = FeeCatalogService.get_fee_for_scope(
            params['category_id'],
            class_id=params.get('class_id'),
            academic_year_id=params.get('academic_year_id'),
            fee_type=params.get('fee_type') or None,
        )
        return Response(FeeDefinitionSerializer(fee).data)

    @action(detail=False, methods=['get'], url_path=r'outstanding/(?P<student_id>\d+)', url_name='outstanding')
    def outstanding(self, request, student_id=None):
        """Unpaid fees for a student (outstanding amount > 0 only)"""
        ensure_student_access(request.user, student_id)
        rows = FeeCatalogService.outstanding_fees(student_id)
        return Response(OutstandingFeeSerializer(rows, many=True).data)


class PaymentViewSet(FinanceMutationMixin, viewsets.ModelViewSet):
    """Fee payments"""
    serializer_class = PaymentSerializer
    http_method_names = ['get', 'post', 'patch', 'delete', 'head', 'options']
    filter_backends = [DjangoFilterBackend, filters.SearchFilter, filters.OrderingFilter]
    filterset_class = PaymentFilter
    search_fields = ['transaction_reference', 'student__admission_number', 'student__last_name']
    ordering_fields = ['payment_date', 'amount_paid', 'created_at']
    lookup_value_regex = r'\d+'

    def get_queryset(self):
        queryset = Payment.objects.select_related(
            'student', 'fee', 'recorded_by', 'school', 'receipt'
        ).all()
        return self.limit_to_owned(queryset)

    def create(self, request, *args, **kwargs):
        serializer = PaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = PaymentService.record_payment(
            recorded_by=request.user, request=request, **serializer.validated_data
        )

        data = PaymentSerializer(result.entry).data
        data['is_paid_in_full'] = result.is_paid_in_full
        data['receipt_id'] = result.receipt.id if result.receipt else data['receipt_id']
        data['receipt_number'] = result.receipt.receipt_number if result.receipt else data['receipt_number']
        data['message'] = 'Payment recorded successfully'
        return Response(data, status=status.HTTP_201_CREATED)

    def partial_update(self, request, *args, **kwargs):
        serializer = PaymentUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        payment, receipt = PaymentService.update_payment(
            kwargs['pk'], user=request.user, request=request, **serializer.validated_data
        )
        data = PaymentSerializer(payment).data
        if receipt:
            data['receipt_id'] = receipt.id
            data['receipt_number'] = receipt.receipt_number
        return Response(data)

    def destroy(self, request, *args, **kwargs):
        PaymentService.delete_payment(kwargs['pk'], user=request.user, request=request)
        return Response({'message': 'Payment deleted successfully'})

    @action(detail=False, methods=['get'], url_path=r'student/(?P<student_id>\d+)/summary',
            url_name='student-summary')
    def student_summary(self, request, student_id=None):
        """Payments, per-fee totals and overall balance for a student"""
        ensure_student_access(request.user, student_id)
        summary = FeeCatalogService.student_payment_summary(student_id)
        return Response(StudentPaymentSummarySerializer(summary).data)


class ReceiptViewSet(FinanceMutationMixin, viewsets.ReadOnlyModelViewSet):
    """Receipts are issued, listed and printed. Never edited."""
    serializer_class = ReceiptSerializer
    filter_backends = [DjangoFilterBackend, filters.OrderingFilter]
    filterset_class = ReceiptFilter
    ordering_fields = ['date_issued', 'amount', 'created_at']
    lookup_value_regex = r'\d+'

    def get_queryset(self):
        queryset = Receipt.objects.select_related(
            'student', 'registration', 'payment', 'issued_by', 'school_class', 'school'
        ).all()
        return self.limit_to_owned(queryset)

    def create(self, request, *args, **kwargs):
        serializer = ReceiptCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        receipt = ReceiptService.issue_receipt(
            issued_by=request.user, request=request, **serializer.validated_data
        )
        return Response({
            'message': 'Receipt generated successfully',
            'data': ReceiptSerializer(receipt).data,
            'receipt_number': receipt.receipt_number
        }, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['get'], url_path='print', url_name='print')
    def print_receipt(self, request, pk=None):
        """Printable HTML rendering of a stored receipt"""
        receipt = self.get_object()
        holder = receipt.holder
        html = render_to_string('finance/receipt_print.html', {
            'receipt': receipt,
            'holder_name': holder.full_name if holder else '',
            'holder_number': receipt.student.admission_number if receipt.student else receipt.registration.application_number,
            'formatted_date': format_long_date(receipt.date_issued),
            'exam_date': format_long_date(receipt.exam_date),
            'amount_in_words': number_to_words(receipt.amount),
            'currency': settings.SCHOOL_LEDGER['CURRENCY_LABEL'],
        })
        return HttpResponse(html, content_type='text/html; charset=utf-8')
