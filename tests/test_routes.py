import asyncio
import json
import unittest
from contextlib import ExitStack
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pyotp
from fastapi import HTTPException
from fastapi.responses import StreamingResponse

from elevation import main
from elevation.auth import deps
from elevation.core.entities import TOTP
from elevation.core.errors import InvalidCredentials, NotFound, RateLimited
from elevation.models import (
    ElevationStartReq, ElevationVerifyReq, FactorConfirmReq, LoginReq, PhoneEnrollReq, TotpEnrollReq,
)
from elevation.providers.memory import MemoryProvider
from elevation.routers import auth, devices, elevation, factors, health
from elevation.services import device_trust, flow_store
from elevation.services import health as health_service


def run_async(coro):
    return asyncio.run(coro)


def build_request(headers=None):
    return SimpleNamespace(headers=headers or {}, state=SimpleNamespace(), client=SimpleNamespace(host="127.0.0.1"))


class RouteTestCase(unittest.TestCase):
    def setUp(self):
        self.p = MemoryProvider()
        self.uid = self.p.add_user("admin@example.com", "pw", role="Admin")
        flow_store.reset()
        self.addCleanup(flow_store.reset)
        stack = ExitStack()
        for module in (auth, deps, elevation, factors, health):
            stack.enter_context(patch.object(module, "get_provider", return_value=self.p))
        self.addCleanup(stack.close)

    def login(self):
        return self.p.authenticate("admin@example.com", "pw").session


class TestAuthRoutes(RouteTestCase):
    def test_login_requires_elevation_with_verified_factor(self):
        self.p.add_factor(self.uid, TOTP)
        resp = run_async(auth.ui_login(build_request(), LoginReq(email="Admin@Example.com", password="pw")))
        self.assertTrue(resp.elevation_required)
        self.assertFalse(resp.needs_setup)
        self.assertEqual(resp.session["assurance"], "base")

    def test_login_without_factors_needs_setup(self):
        resp = run_async(auth.ui_login(build_request(), LoginReq(email="admin@example.com", password="pw")))
        self.assertFalse(resp.elevation_required)
        self.assertTrue(resp.needs_setup)

    def test_login_bad_password(self):
        with self.assertRaises(InvalidCredentials):
            run_async(auth.ui_login(build_request(), LoginReq(email="admin@example.com", password="x")))

    def test_logout(self):
        session = self.login()
        self.assertEqual(run_async(auth.ui_logout(build_request(), session=session)), {"ok": True})
        self.assertIsNone(self.p.get_session(session.access_token))


class TestFactorRoutes(RouteTestCase):
    def test_enroll_and_confirm_totp(self):
        session = self.login()
        out = run_async(factors.enroll_totp(TotpEnrollReq(label="Phone app"), session=session))
        self.assertEqual(out["status"], "pending")
        confirmed = run_async(factors.confirm_factor(
            out["factor_id"], FactorConfirmReq(code=pyotp.TOTP(out["secret"]).now()), session=session,
        ))
        self.assertEqual(confirmed["factor"]["status"], "verified")
        self.assertEqual(confirmed["session"]["assurance"], "elevated")
        listed = run_async(factors.list_factors(session=session))
        self.assertTrue(listed["totp_enabled"])

    def test_enroll_phone_sends_code(self):
        session = self.login()
        out = run_async(factors.enroll_phone(PhoneEnrollReq(phone="0170 1234567"), session=session))
        self.assertEqual(out["phone"], "+491701234567")
        self.assertTrue(out["challenge_id"])
        self.assertEqual(len(self.p.outbox), 1)

    def test_remove_is_gated(self):
        fid, secret = self.p.add_factor(self.uid, TOTP)
        session = self.login()
        with self.assertRaises(HTTPException) as ctx:
            run_async(factors.remove_factor(fid, build_request(), session=session))
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.detail["kinds"], [TOTP])
        self.assertNotIn("unenroll_factor", self.p.calls)

        req = build_request({"x-mfa-code": pyotp.TOTP(secret).now()})
        out = run_async(factors.remove_factor(fid, req, session=session))
        self.assertTrue(out["removed"])
        self.assertNotEqual(out["access_token"], session.access_token)
        self.assertEqual(self.p.list_factors(session.access_token).all, [])


class TestElevationRoutes(RouteTestCase):
    def test_single_totp_flow(self):
        _, secret = self.p.add_factor(self.uid, TOTP)
        session = self.login()
        snap = run_async(elevation.start_elevation(build_request(), ElevationStartReq(), session=session))
        self.assertEqual(snap["state"], "awaiting-challenge")
        flow_id = snap["flow_id"]

        snap = run_async(elevation.verify_code(flow_id, ElevationVerifyReq(code="12a34b"), session=session))
        self.assertEqual(snap["error"]["error"], "format-error")

        snap = run_async(elevation.verify_code(flow_id, ElevationVerifyReq(code=pyotp.TOTP(secret).now()),
                                               session=session))
        self.assertEqual(snap["state"], "complete")
        self.assertEqual(snap["result"]["session"]["assurance"], "elevated")
        self.assertTrue(self.p.get_session(snap["access_token"]).elevated)

    def test_verify_aliases(self):
        self.assertEqual(ElevationVerifyReq.model_validate({"totp_code": "123456"}).code, "123456")

    def test_flow_of_other_subject(self):
        self.p.add_factor(self.uid, TOTP)
        session = self.login()
        snap = run_async(elevation.start_elevation(build_request(), ElevationStartReq(), session=session))
        other_uid = self.p.add_user("other@example.com", "pw")
        other = self.p.authenticate("other@example.com", "pw").session
        self.assertNotEqual(other_uid, self.uid)
        with self.assertRaises(NotFound):
            run_async(elevation.get_elevation(snap["flow_id"], session=other))

    def test_cancel_with_sign_out(self):
        self.p.add_factor(self.uid, TOTP)
        session = self.login()
        snap = run_async(elevation.start_elevation(build_request(), ElevationStartReq(), session=session))
        out = run_async(elevation.cancel_elevation(build_request(), snap["flow_id"], sign_out=True, session=session))
        self.assertEqual(out["state"], "failed")
        self.assertEqual(out["result"]["outcome"], "cancelled")
        self.assertTrue(out["signed_out"])
        self.assertIsNone(self.p.get_session(session.access_token))

    def test_events_stream_replays_history(self):
        self.p.add_factor(self.uid, TOTP)
        session = self.login()
        snap = run_async(elevation.start_elevation(build_request(), ElevationStartReq(), session=session))
        run_async(elevation.cancel_elevation(build_request(), snap["flow_id"], session=session))

        async def collect():
            resp = await elevation.elevation_events(snap["flow_id"], session=session)
            self.assertIsInstance(resp, StreamingResponse)
            return [chunk async for chunk in resp.body_iterator]

        chunks = run_async(collect())
        self.assertTrue(chunks[0].startswith("event: hello"))
        states = [json.loads(c.split("data: ", 1)[1])["state"] for c in chunks[1:]]
        self.assertEqual(states, ["awaiting-challenge", "failed"])


class TestDeviceRoutes(RouteTestCase):
    def setUp(self):
        super().setUp()
        self.table = Mock()
        patcher = patch.object(device_trust, "T", SimpleNamespace(trusted_devices=self.table))
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_revoke_requires_ownership(self):
        self.table.get_item.return_value = {"Item": {"record_id": "td_1", "user_sub": "someone-else"}}
        with self.assertRaises(NotFound):
            run_async(devices.revoke_trusted_device("td_1", build_request(), session=self.login()))
        self.table.update_item.assert_not_called()

    def test_list(self):
        self.table.query.return_value = {"Items": [
            {"record_id": "td_1", "user_sub": self.uid, "device_label": "laptop", "trusted_until": 4_102_444_800,
             "active": True},
        ]}
        resp = run_async(devices.list_trusted_devices(session=self.login()))
        self.assertEqual(resp.devices[0].record_id, "td_1")
        self.assertTrue(resp.devices[0].active)
        self.assertEqual(resp.stats["active_devices"], 1)


class TestHealthAndErrors(RouteTestCase):
    def test_healthz(self):
        with patch.object(health_service, "T", SimpleNamespace(trusted_devices=Mock())):
            resp = run_async(health.healthz())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(json.loads(resp.body)["status"], "healthy")

    def test_healthz_degraded(self):
        table = Mock()
        table.load.side_effect = RuntimeError("no table")
        with patch.object(health_service, "T", SimpleNamespace(trusted_devices=table)):
            resp = run_async(health.healthz())
        self.assertEqual(resp.status_code, 503)
        self.assertIn("Trusted device store unavailable", json.loads(resp.body)["issues"])

    def test_error_handler(self):
        resp = run_async(main.elevation_error_handler(build_request(), RateLimited(30)))
        self.assertEqual(resp.status_code, 429)
        self.assertEqual(json.loads(resp.body)["wait_seconds"], 30)

    def test_app_routes(self):
        paths = set(main.create_app().openapi()["paths"])
        for p in ("/ui/auth/login", "/ui/mfa/factors/{factor_id}/remove", "/ui/elevation/{flow_id}/verify",
                  "/ui/devices/revoke-all", "/healthz"):
            self.assertIn(p, paths)
