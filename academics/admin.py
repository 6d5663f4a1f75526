from django.contrib import admin
from .models import School, Category, SchoolClass, AcademicYear


@admin.register(School)
class SchoolAdmin(admin.ModelAdmin):
    list_display = ['name', 'phone_number', 'created_at']
    search_fields = ['name']


@admin.register(SchoolClass)
class SchoolClassAdmin(admin.ModelAdmin):
    list_display = ['name', 'grade_level', 'category', 'school']
    list_filter = ['category', 'school']
    search_fields = ['name']


admin.site.register(Category)
admin.site.register(AcademicYear)
