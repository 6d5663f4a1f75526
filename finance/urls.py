from django.urls import path, include
from rest_framework.routers import SimpleRouter

from .views import FeeDefinitionViewSet, PaymentViewSet, ReceiptViewSet
from .views_invoices import InvoiceViewSet
from .views_reports import ReportViewSet

# --- Fees, payments and receipts (/api/fees/) ---
# payments/ and receipts/ go first so they are not read as a fee lookup
fee_router = SimpleRouter()
fee_router.register(r'payments', PaymentViewSet, basename='payment')
fee_router.register(r'receipts', ReceiptViewSet, basename='receipt')
fee_router.register(r'', FeeDefinitionViewSet, basename='fee')

# --- Invoices (/api/invoices/) ---
invoice_router = SimpleRouter()
invoice_router.register(r'', InvoiceViewSet, basename='invoice')

# --- Reports (/api/reports/) ---
report_router = SimpleRouter()
report_router.register(r'', ReportViewSet, basename='report')

fee_urlpatterns = [path('', include(fee_router.urls))]
invoice_urlpatterns = [path('', include(invoice_router.urls))]
report_urlpatterns = [path('', include(report_router.urls))]
