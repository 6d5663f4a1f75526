from datetime import timedelta
from decimal import Decimal

from django.utils import timezone

from academics.models import School, Category, SchoolClass, AcademicYear
from users.models import User, Student
from finance.models import FeeDefinition


class LedgerFixtures:
    """Shared school, class, fee and user rows for finance tests"""

    def setUp(self):
        self.today = timezone.localdate()
        self.school = School.objects.create(name='Sunrise Academy', logo_url='/static/sunrise.png')
        self.category = Category.objects.create(name='Primary', school=self.school)
        self.other_category = Category.objects.create(name='Secondary', school=self.school)
        self.school_class = SchoolClass.objects.create(
            name='Primary 1', grade_level=1, category=self.category, school=self.school
        )
        self.other_class = SchoolClass.objects.create(
            name='Primary 2', grade_level=2, category=self.category, school=self.school
        )
        self.year = AcademicYear.objects.create(year='2025/2026', is_current=True)

        self.bursar = User.objects.create_user(
            username='bursar', email='bursar@school.test', password='pass1234',
            first_name='Bola', last_name='Bursar', role='bursar', school=self.school
        )
        self.student_user = User.objects.create_user(
            username='amina', email='amina@school.test', password='pass1234',
            first_name='Amina', last_name='Yusuf', role='student', school=self.school
        )
        self.parent_user = User.objects.create_user(
            username='parent', email='parent@school.test', password='pass1234',
            first_name='Musa', last_name='Yusuf', role='parent', school=self.school
        )
        self.student = Student.objects.create(
            user=self.student_user,
            admission_number='ADM001',
            first_name='Amina',
            last_name='Yusuf',
            school=self.school,
            school_class=self.school_class,
            category=self.category,
            guardian_name='Musa Yusuf',
            guardian_user=self.parent_user,
        )
        self.other_student = Student.objects.create(
            admission_number='ADM002',
            first_name='Chidi',
            last_name='Okafor',
            school=self.school,
            school_class=self.other_class,
            category=self.category,
        )

        self.tuition = FeeDefinition.objects.create(
            category=self.category,
            school_class=self.school_class,
            fee_type='tuition',
            amount=Decimal('500.00'),
            description='First term tuition',
            school=self.school,
        )

    def make_fee(self, fee_type='exam', amount='1000.00', school_class=None, academic_year=None, category=None):
        return FeeDefinition.objects.create(
            category=category or self.category,
            school_class=school_class,
            fee_type=fee_type,
            amount=Decimal(amount),
            academic_year=academic_year,
            school=self.school,
        )

    def days_from_today(self, days):
        return self.today + timedelta(days=days)
