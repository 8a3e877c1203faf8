import asyncio
import unittest
from types import SimpleNamespace
from unittest.mock import patch

from fastapi import HTTPException

from elevation.auth import deps
from elevation.providers.memory import MemoryProvider


def run_async(coro):
    return asyncio.run(coro)


def build_request(headers=None):
    return SimpleNamespace(headers=headers or {}, state=SimpleNamespace(), client=SimpleNamespace(host="127.0.0.1"))


class TestExtractBearer(unittest.TestCase):
    def test_requires_header(self):
        with self.assertRaises(HTTPException) as ctx:
            deps.extract_bearer_token("")
        self.assertEqual(ctx.exception.status_code, 401)

    def test_rejects_invalid_scheme(self):
        with self.assertRaises(HTTPException) as ctx:
            deps.extract_bearer_token("Token abc")
        self.assertEqual(ctx.exception.status_code, 401)

    def test_accepts_bearer(self):
        self.assertEqual(deps.extract_bearer_token("Bearer  abc "), "abc")


class TestCurrentSession(unittest.TestCase):
    def setUp(self):
        self.p = MemoryProvider()
        self.uid = self.p.add_user("a@example.com", "pw", role="Admin")
        self.token = self.p.authenticate("a@example.com", "pw").session.access_token
        patcher = patch.object(deps, "get_provider", return_value=self.p)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_resolves_session(self):
        req = build_request({"authorization": f"Bearer {self.token}"})
        session = run_async(deps.get_current_session(req))
        self.assertEqual(session.subject, self.uid)
        self.assertEqual(req.state.user_sub, self.uid)

    def test_unknown_token(self):
        with self.assertRaises(HTTPException) as ctx:
            run_async(deps.get_current_session(build_request({"authorization": "Bearer nope"})))
        self.assertEqual(ctx.exception.status_code, 401)

    def test_missing_header(self):
        with self.assertRaises(HTTPException) as ctx:
            run_async(deps.get_current_session(build_request()))
        self.assertEqual(ctx.exception.status_code, 401)

    def test_device_id(self):
        self.assertEqual(deps.device_id_from_request(build_request({"x-device-id": " laptop "})), "laptop")
        self.assertEqual(deps.device_id_from_request(build_request()), "")
