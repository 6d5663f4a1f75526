from django.db import models


class School(models.Model):
    """A school in a multi-school deployment"""
    name = models.CharField(max_length=200)
    address = models.TextField(blank=True)
    phone_number = models.CharField(max_length=20, blank=True)
    logo_url = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['name']
        verbose_name = 'School'
        verbose_name_plural = 'Schools'

    def __str__(self):
        return self.name


class Category(models.Model):
    """Student category (e.g. Nursery, Primary, Secondary) used to scope fees"""
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    school = models.ForeignKey(School, on_delete=models.CASCADE, null=True, blank=True, related_name='categories')

    class Meta:
        ordering = ['name']
        verbose_name = 'Category'
        verbose_name_plural = 'Categories'

    def __str__(self):
        return self.name


class SchoolClass(models.Model):
    """A class / grade within a category"""
    name = models.CharField(max_length=100)
    grade_level = models.PositiveIntegerField(default=0)
    category = models.ForeignKey(Category, on_delete=models.SET_NULL, null=True, blank=True, related_name='classes')
    school = models.ForeignKey(School, on_delete=models.CASCADE, null=True, blank=True, related_name='classes')

    class Meta:
        ordering = ['grade_level', 'name']
        verbose_name = 'Class'
        verbose_name_plural = 'Classes'

    def __str__(self):
        return self.name


class AcademicYear(models.Model):
    """Academic year / session label, e.g. 2025/2026"""
    year = models.CharField(max_length=9, unique=True)
    start_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    is_current = models.BooleanField(default=False)

    class Meta:
        ordering = ['-year']
        verbose_name = 'Academic Year'
        verbose_name_plural = 'Academic Years'

    def __str__(self):
        return self.year

    def save(self, *args, **kwargs):
        # Only one current academic year
        if self.is_current:
            AcademicYear.objects.filter(is_current=True).exclude(id=self.id).update(is_current=False)
        super().save(*args, **kwargs)
