"""
URL Configuration for the School Fee Ledger backend
"""
from django.contrib import admin
from django.urls import path, include
from django.conf import settings
from django.conf.urls.static import static

from finance.urls import fee_urlpatterns, invoice_urlpatterns, report_urlpatterns

urlpatterns = [
    path('admin/', admin.site.urls),

    # API endpoints
    path('api/auth/', include('users.urls')),
    path('api/fees/', include(fee_urlpatterns)),
    path('api/invoices/', include(invoice_urlpatterns)),
    path('api/reports/', include(report_urlpatterns)),
]

# Serve static files in development
if settings.DEBUG:
    urlpatterns += static(settings.STATIC_URL, document_root=settings.STATIC_ROOT)

# Admin site customization
admin.site.site_header = "School Fee Ledger"
admin.site.site_title = "Fee Ledger Admin"
admin.site.index_title = "Welcome to the School Fee Ledger Administration"
