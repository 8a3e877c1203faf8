import asyncio
import unittest
from unittest.mock import Mock, patch

import pyotp

from elevation.core.entities import ELEVATED, PHONE, TOTP, Session
from elevation.core.errors import INVALID_CODE, NO_VERIFIED_FACTORS
from elevation.providers.memory import MemoryProvider
from elevation.services import gate as gate_mod
from elevation.services.gate import CANCELLED, EXECUTED, FAILED, SensitiveActionGate
from elevation.services.policy import ElevationPolicy

PHONE_NO = "+491701234567"
POLICY = ElevationPolicy(require_mfa=True, allowed_factor_kinds=(PHONE, TOTP))


def run_async(coro):
    return asyncio.run(coro)


def bad_totp(secret):
    t = pyotp.TOTP(secret)
    return next(c for c in ("000000", "111111", "222222", "333333") if not t.verify(c, valid_window=1))


class TestSensitiveActionGate(unittest.TestCase):
    def setUp(self):
        self.p = MemoryProvider()
        self.uid = self.p.add_user("admin@example.com", "pw", phone=PHONE_NO, role="Admin")
        self.token = self.p.authenticate("admin@example.com", "pw").session.access_token
        self.work = Mock(return_value="done")
        self.prompts = []

    def gate(self, policy=POLICY):
        return SensitiveActionGate(self.p, self.token, policy)

    def test_exempt_policy_runs_without_provider(self):
        result = run_async(self.gate(ElevationPolicy(require_mfa=False)).guard("delete", self.work, Mock()))
        self.assertEqual(result.outcome, EXECUTED)
        self.assertEqual(result.value, "done")
        self.assertEqual(result.method, "exempt")
        self.assertEqual(self.p.calls, ["authenticate"])

    def test_elevated_session_runs_immediately(self):
        provider = Mock()
        provider.get_session.return_value = Session(subject="u1", assurance=ELEVATED)
        prompt = Mock()
        g = SensitiveActionGate(provider, "tok", POLICY)
        result = run_async(g.guard("delete", self.work, prompt))
        self.assertEqual(result.outcome, EXECUTED)
        self.assertEqual(result.method, "session")
        prompt.assert_not_called()
        provider.list_factors.assert_not_called()

    def test_phone_tried_first(self):
        self.p.add_factor(self.uid, TOTP)
        self.p.add_factor(self.uid, PHONE, phone=PHONE_NO)

        async def prompt(info):
            self.prompts.append(info)
            return self.p.last_code(PHONE_NO)

        result = run_async(self.gate().guard("delete account", self.work, prompt))
        self.assertEqual(result.outcome, EXECUTED)
        self.assertEqual(result.method, PHONE)
        self.assertEqual(self.prompts[0].kinds, (PHONE, TOTP))
        self.assertEqual(self.prompts[0].sent_to, PHONE_NO)
        self.assertEqual(self.prompts[0].action, "delete account")
        self.work.assert_called_once_with()

    def test_falls_back_to_totp(self):
        _, secret = self.p.add_factor(self.uid, TOTP)
        self.p.add_factor(self.uid, PHONE, phone=PHONE_NO)

        async def prompt(info):
            return pyotp.TOTP(secret).now()

        result = run_async(self.gate().guard("delete", self.work, prompt))
        self.assertEqual(result.outcome, EXECUTED)
        self.assertEqual(result.method, TOTP)

    def test_order_comes_from_policy(self):
        _, secret = self.p.add_factor(self.uid, TOTP)
        self.p.add_factor(self.uid, PHONE, phone=PHONE_NO)

        async def prompt(info):
            self.prompts.append(info)
            return pyotp.TOTP(secret).now()

        policy = ElevationPolicy(require_mfa=True, allowed_factor_kinds=(TOTP,))
        result = run_async(self.gate(policy).guard("delete", self.work, prompt))
        self.assertEqual(result.outcome, EXECUTED)
        self.assertEqual(self.prompts[0].kinds, (TOTP,))
        self.assertEqual(self.p.outbox, [])

    def test_cancel_discards_work(self):
        self.p.add_factor(self.uid, TOTP)

        async def prompt(info):
            return None

        result = run_async(self.gate().guard("delete", self.work, prompt))
        self.assertEqual(result.outcome, CANCELLED)
        self.work.assert_not_called()

    def test_wrong_code_never_runs_work(self):
        _, secret = self.p.add_factor(self.uid, TOTP)

        async def prompt(info):
            return bad_totp(secret)

        result = run_async(self.gate().guard("delete", self.work, prompt))
        self.assertEqual(result.outcome, FAILED)
        self.assertEqual(result.error.category, INVALID_CODE)
        self.assertTrue(result.message)
        self.work.assert_not_called()

    def test_no_factors(self):
        p = MemoryProvider()
        p.add_user("x@example.com", "pw")
        token = p.authenticate("x@example.com", "pw").session.access_token
        result = run_async(SensitiveActionGate(p, token, POLICY).guard("delete", self.work, Mock()))
        self.assertEqual(result.outcome, FAILED)
        self.assertEqual(result.error.category, NO_VERIFIED_FACTORS)
        self.work.assert_not_called()

    def test_async_work_is_awaited(self):
        async def work():
            return 42

        result = run_async(self.gate(ElevationPolicy(require_mfa=False)).guard("x", work, Mock()))
        self.assertEqual(result.value, 42)

    def test_trusted_device_skips_prompt(self):
        self.p.add_factor(self.uid, TOTP)
        policy = ElevationPolicy(require_mfa=True, allowed_factor_kinds=(TOTP,), remember_device=True)
        prompt = Mock()
        with patch.object(gate_mod.device_trust, "is_trusted", return_value=True) as is_trusted:
            g = SensitiveActionGate(self.p, self.token, policy, device="laptop")
            result = run_async(g.guard("delete", self.work, prompt))
        self.assertEqual(result.outcome, EXECUTED)
        self.assertEqual(result.method, "trusted-device")
        is_trusted.assert_called_once_with(self.uid, "laptop")
        prompt.assert_not_called()
