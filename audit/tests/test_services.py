from decimal import Decimal

from django.contrib.auth.models import AnonymousUser
from django.test import RequestFactory, TestCase

from academics.models import School
from audit.models import AuditLog
from audit.services import log_action


class LogActionTest(TestCase):

    def setUp(self):
        self.school = School.objects.create(name='Sunrise Academy')

    def test_changes_are_json_safe(self):
        entry = log_action(None, 'update', self.school, 'Changed fee', changes={'amount': Decimal('12.50')})
        entry.refresh_from_db()
        self.assertEqual(entry.changes, {'amount': '12.50'})
        self.assertEqual(entry.model_name, 'School')
        self.assertEqual(entry.object_id, str(self.school.pk))

    def test_anonymous_user_and_forwarded_ip(self):
        request = RequestFactory().post('/', HTTP_X_FORWARDED_FOR='10.0.0.7, 172.16.0.1')
        entry = log_action(AnonymousUser(), 'create', self.school, 'Created', request=request)
        self.assertIsNone(entry.user)
        self.assertEqual(entry.ip_address, '10.0.0.7')
        self.assertEqual(AuditLog.objects.count(), 1)
