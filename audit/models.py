from django.conf import settings
from django.db import models


class AuditLog(models.Model):
    """Audit trail for ledger mutations"""

    ACTION_CHOICES = [
        ('create', 'Create'),
        ('update', 'Update'),
        ('delete', 'Delete'),
        ('payment', 'Payment'),
        ('receipt', 'Receipt Issued'),
        ('send', 'Sent'),
        ('cancel', 'Cancel'),
    ]

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='audit_logs')
    action = models.CharField(max_length=20, choices=ACTION_CHOICES)
    model_name = models.CharField(max_length=100)
    object_id = models.CharField(max_length=100, blank=True)
    description = models.TextField()
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    changes = models.JSONField(default=dict, blank=True)  # before/after values
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-timestamp']
        verbose_name = 'Audit Log'
        verbose_name_plural = 'Audit Logs'
        indexes = [
            models.Index(fields=['user', '-timestamp'], name='audit_audit_user_id_d0b1d5_idx'),
            models.Index(fields=['model_name', '-timestamp'], name='audit_audit_model_n_8c3f21_idx'),
            models.Index(fields=['action', '-timestamp'], name='audit_audit_action_4e7a90_idx'),
        ]

    def __str__(self):
        return f"{self.user} - {self.action} - {self.model_name} - {self.timestamp}"
