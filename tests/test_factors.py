import asyncio
import unittest

import pyotp

from elevation.core.entities import PENDING, PHONE, TOTP, VERIFIED
from elevation.core.errors import AlreadyEnrolled, FormatError, InvalidCode, NotFound
from elevation.providers.memory import MemoryProvider
from elevation.services.factors import FactorRegistry
from elevation.services.locks import SubjectLocks


def run_async(coro):
    return asyncio.run(coro)


class TestFactorRegistry(unittest.TestCase):
    def setUp(self):
        self.p = MemoryProvider()
        self.uid = self.p.add_user("t@example.com", "pw", role="Teacher")
        self.token = self.p.authenticate("t@example.com", "pw").session.access_token
        self.reg = FactorRegistry(self.p, self.token, self.uid, locks=SubjectLocks())

    def test_second_totp_is_already_enrolled(self):
        run_async(self.reg.enroll(TOTP))
        with self.assertRaises(AlreadyEnrolled):
            run_async(self.reg.enroll(TOTP))
        self.assertEqual(self.p.calls.count("enroll_factor"), 1)

    def test_unknown_kind(self):
        with self.assertRaises(FormatError):
            run_async(self.reg.enroll("webauthn"))

    def test_phone_is_normalized_before_provider(self):
        enr = run_async(self.reg.enroll(PHONE, {"phone": "0049 170 1234567"}))
        self.assertEqual(enr.phone, "+491701234567")
        with self.assertRaises(FormatError):
            run_async(self.reg.enroll(PHONE, {"phone": "12"}))

    def test_confirm_totp_enrollment(self):
        enr = run_async(self.reg.enroll(TOTP))
        self.assertEqual(run_async(self.reg.get(enr.factor_id)).status, PENDING)
        factor, session = run_async(self.reg.confirm_enrollment(enr.factor_id, pyotp.TOTP(enr.secret).now()))
        self.assertEqual(factor.status, VERIFIED)
        self.assertTrue(session.elevated)
        self.assertTrue(run_async(self.reg.list()).verified())
        with self.assertRaises(AlreadyEnrolled):
            run_async(self.reg.confirm_enrollment(enr.factor_id, pyotp.TOTP(enr.secret).now()))

    def test_failed_confirmation_leaves_factor_pending(self):
        enr = run_async(self.reg.enroll(PHONE, {"phone": "+491701234567"}))
        cid = run_async(self.reg.begin_confirmation(enr.factor_id))
        code = self.p.last_code("+491701234567")
        wrong = str((int(code) + 1) % 10**6).zfill(6)
        with self.assertRaises(InvalidCode):
            run_async(self.reg.confirm_enrollment(enr.factor_id, wrong, cid))
        self.assertEqual(run_async(self.reg.get(enr.factor_id)).status, PENDING)

    def test_phone_confirmation_syncs_contact(self):
        enr = run_async(self.reg.enroll(PHONE, {"phone": "+491701234567"}))
        cid = run_async(self.reg.begin_confirmation(enr.factor_id))
        factor, session = run_async(self.reg.confirm_enrollment(enr.factor_id, self.p.last_code("+491701234567"), cid))
        self.assertEqual(factor.status, VERIFIED)
        self.assertIn("update_subject_contact", self.p.calls)
        self.assertEqual(self.p.get_session(session.access_token).subject, self.uid)
        # second sync with the same value is skipped
        self.p.calls.clear()
        self.assertFalse(run_async(self.reg.sync_contact("phone", "+491701234567")))
        self.assertNotIn("update_subject_contact", self.p.calls)

    def test_unenroll_is_idempotent(self):
        enr = run_async(self.reg.enroll(TOTP))
        self.assertTrue(run_async(self.reg.unenroll(enr.factor_id)))
        self.assertFalse(run_async(self.reg.unenroll(enr.factor_id)))
        with self.assertRaises(NotFound):
            run_async(self.reg.get(enr.factor_id))
