from django.db import models
from django.contrib.auth.models import AbstractUser
from django.core.validators import RegexValidator


phone_regex = RegexValidator(
    regex=r'^\+?1?\d{9,15}$',
    message="Phone number must be entered in the format: '+999999999'. Up to 15 digits allowed."
)


class User(AbstractUser):
    """Custom User model with role-based access"""

    ROLE_CHOICES = [
        ('student', 'Student'),
        ('parent', 'Parent / Guardian'),
        ('teacher', 'Teacher'),
        ('bursar', 'Bursar'),
        ('accountant', 'Accountant'),
        ('admin', 'School Admin'),
        ('super-admin', 'Super Admin'),
    ]

    email = models.EmailField(unique=True)
    role = models.CharField(max_length=20, choices=ROLE_CHOICES)
    phone = models.CharField(validators=[phone_regex], max_length=17, blank=True)
    school = models.ForeignKey('academics.School', on_delete=models.SET_NULL, null=True, blank=True, related_name='staff')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = ['username', 'first_name', 'last_name', 'role']

    class Meta:
        ordering = ['-created_at']
        verbose_name = 'User'
        verbose_name_plural = 'Users'

    def __str__(self):
        return f"{self.get_full_name()} ({self.role})"

    @property
    def full_name(self):
        return self.get_full_name()


class Student(models.Model):
    """Enrolled student. A login account is optional."""

    STATUS_CHOICES = [
        ('active', 'Active'),
        ('inactive', 'Inactive'),
        ('graduated', 'Graduated'),
        ('suspended', 'Suspended'),
    ]

    user = models.OneToOneField(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='student_profile')
    admission_number = models.CharField(max_length=30, unique=True)
    first_name = models.CharField(max_length=100)
    middle_name = models.CharField(max_length=100, blank=True)
    last_name = models.CharField(max_length=100)
    school = models.ForeignKey('academics.School', on_delete=models.SET_NULL, null=True, blank=True, related_name='students')
    school_class = models.ForeignKey('academics.SchoolClass', on_delete=models.SET_NULL, null=True, blank=True, related_name='students')
    category = models.ForeignKey('academics.Category', on_delete=models.SET_NULL, null=True, blank=True, related_name='students')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active')
    guardian_name = models.CharField(max_length=200, blank=True)
    guardian_phone = models.CharField(validators=[phone_regex], max_length=17, blank=True)
    guardian_email = models.EmailField(blank=True)
    guardian_user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name='wards')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['admission_number']
        verbose_name = 'Student'
        verbose_name_plural = 'Students'

    def __str__(self):
        return f"{self.admission_number} - {self.full_name}"

    @property
    def full_name(self):
        return ' '.join(part for part in [self.first_name, self.middle_name, self.last_name] if part)
