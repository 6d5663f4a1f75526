from django.contrib import admin
from .models import Registration


@admin.register(Registration)
class RegistrationAdmin(admin.ModelAdmin):
    list_display = ['application_number', 'full_name', 'class_applied_for', 'school', 'status', 'submitted_date']
    list_filter = ['status', 'school', 'class_applied_for']
    search_fields = ['application_number', 'first_name', 'last_name', 'guardian_name']
    date_hierarchy = 'submitted_date'
    readonly_fields = ['application_number', 'submitted_date']
