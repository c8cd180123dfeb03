"""Tests for the httpx-backed transport."""

from __future__ import annotations

import asyncio
import json
import unittest

import httpx

from sidechat.cancellation import CancellationToken
from sidechat.exceptions import AuthenticationError, RequestCancelled, TransportError
from sidechat.transport import SESSION_EXPIRED_MESSAGE, HttpxTransport, TransportResponse


def make_transport(handler, token: str | None = "tok", **kwargs) -> HttpxTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpxTransport("http://backend.test/", lambda: token, client=client, **kwargs)


class TransportResponseTests(unittest.TestCase):
    def test_helpers(self) -> None:
        response = TransportResponse.from_json(201, {"a": 1}, reason="Created")
        self.assertTrue(response.ok)
        self.assertEqual(response.content_type, "application/json")
        self.assertEqual(response.json(), {"a": 1})

        page = TransportResponse(status_code=502, headers={"Content-Type": "text/html; charset=utf-8"}, body=b"<html/>")
        self.assertFalse(page.ok)
        self.assertEqual(page.content_type, "text/html")
        with self.assertRaises(ValueError):
            page.json()


class HttpxTransportTests(unittest.IsolatedAsyncioTestCase):
    """Validate auth headers, error mapping and cancellation racing."""

    async def test_sends_bearer_token_and_json(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"code": 0, "data": {"id": "c-1"}})

        transport = make_transport(handler)
        response = await transport.request(
            "POST", "/api/conversations", json={"title": "Hello", "model": "m1"}
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["id"], "c-1")
        request = seen[0]
        self.assertEqual(str(request.url), "http://backend.test/api/conversations")
        self.assertEqual(request.headers["Authorization"], "Bearer tok")
        self.assertEqual(json.loads(request.content), {"title": "Hello", "model": "m1"})
        await transport.aclose()

    async def test_async_token_provider(self) -> None:
        async def provider() -> str:
            return "async-tok"

        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json={})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = HttpxTransport("http://backend.test", provider, client=client)
        await transport.request("GET", "/api/conversations")
        self.assertEqual(seen, ["Bearer async-tok"])
        await client.aclose()

    async def test_missing_token_raises_authentication_error(self) -> None:
        calls: list[httpx.Request] = []
        transport = make_transport(lambda request: calls.append(request), token="  ")

        with self.assertRaises(AuthenticationError):
            await transport.request("GET", "/api/conversations")
        self.assertEqual(calls, [])

    async def test_unauthorized_triggers_expiry_callback(self) -> None:
        expired: list[bool] = []

        async def on_expired() -> None:
            expired.append(True)

        transport = make_transport(
            lambda request: httpx.Response(401, text="nope"), on_auth_expired=on_expired
        )
        with self.assertLogs("sidechat.transport", level="WARNING"):
            response = await transport.request("GET", "/api/conversations")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json(), {"detail": SESSION_EXPIRED_MESSAGE})
        self.assertEqual(expired, [True])

    async def test_network_error_becomes_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        transport = make_transport(handler)
        with self.assertLogs("sidechat.transport", level="WARNING") as logs:
            with self.assertRaises(TransportError) as ctx:
                await transport.request("POST", "/api/chat/v1/completions", json={})

        self.assertNotIsInstance(ctx.exception, RequestCancelled)
        self.assertTrue(any("transport.request.failed" in line for line in logs.output))

    async def test_html_error_page_is_returned_raw(self) -> None:
        transport = make_transport(
            lambda request: httpx.Response(502, text="<html>Bad Gateway</html>")
        )
        response = await transport.request("POST", "/api/chat/v1/completions", json={})
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.reason, "Bad Gateway")
        self.assertIn(b"Bad Gateway", response.body)

    async def test_cancel_unblocks_in_flight_request(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(30)
            return httpx.Response(200, json={})

        transport = make_transport(handler)
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.02, token.cancel)

        started = loop.time()
        with self.assertRaises(RequestCancelled):
            await transport.request("POST", "/api/chat/v1/completions", json={}, token=token)
        self.assertLess(loop.time() - started, 5)

    async def test_cancelled_token_skips_request(self) -> None:
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        token = CancellationToken()
        token.cancel()
        with self.assertRaises(RequestCancelled):
            await make_transport(handler).request("GET", "/x", token=token)
        self.assertEqual(calls, [])

    async def test_multipart_upload(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"code": 0, "data": {}})

        await make_transport(handler).request(
            "POST",
            "/api/uploader/v1/file/upload-directly",
            data={"mime": "text/plain"},
            files={"file": ("a.txt", b"hello", "text/plain")},
        )

        request = seen[0]
        self.assertTrue(request.headers["content-type"].startswith("multipart/form-data"))
        body = request.read()
        self.assertIn(b'name="mime"', body)
        self.assertIn(b'filename="a.txt"', body)


if __name__ == "__main__":
    unittest.main()
