from django.db import models
import uuid

from users.models import phone_regex


class Registration(models.Model):
    """An applicant. Registration and admission fees can be receipted before the applicant becomes a student"""

    STATUS_CHOICES = [
        ('submitted', 'Submitted'),
        ('admitted', 'Admitted'),
        ('rejected', 'Rejected'),
        ('withdrawn', 'Withdrawn'),
    ]

    application_number = models.CharField(max_length=50, unique=True, editable=False)
    first_name = models.CharField(max_length=100)
    middle_name = models.CharField(max_length=100, blank=True)
    last_name = models.CharField(max_length=100)
    class_applied_for = models.ForeignKey(
        'academics.SchoolClass',
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='registrations'
    )
    school = models.ForeignKey('academics.School', on_delete=models.SET_NULL, null=True, blank=True, related_name='registrations')
    guardian_name = models.CharField(max_length=200, blank=True)
    guardian_phone = models.CharField(validators=[phone_regex], max_length=17, blank=True)
    guardian_email = models.EmailField(blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='submitted')
    submitted_date = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-submitted_date']
        verbose_name = 'Registration'
        verbose_name_plural = 'Registrations'

    def __str__(self):
        return f"{self.application_number} - {self.full_name}"

    @property
    def full_name(self):
        return ' '.join(part for part in [self.first_name, self.middle_name, self.last_name] if part)

    def save(self, *args, **kwargs):
        if not self.application_number:
            self.application_number = f"APP-{uuid.uuid4().hex[:10].upper()}"
        super().save(*args, **kwargs)
