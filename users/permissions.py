import logging

from rest_framework import permissions

logger = logging.getLogger(__name__)

FINANCE_ROLES = ['bursar', 'accountant', 'admin', 'super-admin']


class CanManageFinance(permissions.BasePermission):
    """Permission for managing fees, payments, receipts and invoices"""
    allowed_roles = FINANCE_ROLES

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False
        if request.user.role in self.allowed_roles or request.user.is_superuser:
            return True
        logger.warning(f"⛔ Permission Denied: '{request.user.email}' ({request.user.role}) tried a finance staff action")
        return False


class CanGenerateFinancialReports(permissions.BasePermission):
    """Permission for generating financial reports"""
    allowed_roles = FINANCE_ROLES

    def has_permission(self, request, view):
        return request.user.is_authenticated and (
            request.user.role in self.allowed_roles or request.user.is_superuser
        )


def is_finance_staff(user):
    return bool(user and user.is_authenticated and (user.role in FINANCE_ROLES or user.is_superuser))


def owned_student_ids(user):
    """Student ids a non-staff user may see: their own profile or their wards"""
    from .models import Student

    if user.role == 'student':
        return list(Student.objects.filter(user=user).values_list('id', flat=True))
    if user.role == 'parent':
        return list(Student.objects.filter(guardian_user=user).values_list('id', flat=True))
    return []
