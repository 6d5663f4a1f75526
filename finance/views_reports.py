import logging
from io import BytesIO

import pandas as pd
from django.http import HttpResponse
from rest_framework import viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from users.permissions import CanGenerateFinancialReports
from .serializers import ReportQuerySerializer, CollectionsSummarySerializer
from .services import ReportService

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = {
    'date': 'Date',
    'source': 'Source',
    'reference': 'Reference',
    'student': 'Student',
    'admission_number': 'Admission Number',
    'description': 'Description',
    'method': 'Method',
    'amount': 'Amount',
}


class ReportViewSet(viewsets.ViewSet):
    permission_classes = [IsAuthenticated, CanGenerateFinancialReports]

    def _range(self, request):
        query = ReportQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        return query.validated_data.get('start_date'), query.validated_data.get('end_date')

    @action(detail=False, methods=['get'])
    def summary(self, request):
        """Collections per payment method for ?start_date&end_date"""
        start_date, end_date = self._range(request)
        summary = ReportService.summary(start_date, end_date)
        return Response(CollectionsSummarySerializer(summary).data)

    @action(detail=False, methods=['get'])
    def export(self, request):
        """Every fee and invoice payment in the range as an Excel sheet"""
        start_date, end_date = self._range(request)
        rows = ReportService.collections(start_date, end_date)

        df = pd.DataFrame(rows, columns=list(EXPORT_COLUMNS))
        df['amount'] = df['amount'].astype(float)
        df['date'] = df['date'].map(lambda d: d.strftime('%Y-%m-%d') if d else '')
        df = df.rename(columns=EXPORT_COLUMNS)

        output = BytesIO()
        with pd.ExcelWriter(output, engine='openpyxl') as writer:
            df.to_excel(writer, sheet_name='Collections', index=False)
        output.seek(0)

        suffix = '_'.join(str(d) for d in (start_date, end_date) if d) or 'all'
        logger.info(f"📊 Collections export by {request.user.email}: {len(rows)} rows")
        response = HttpResponse(
            output.getvalue(),
            content_type='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
        )
        response['Content-Disposition'] = f'attachment; filename="Collections_{suffix}.xlsx"'
        return response
