import unittest

import httpx

from skillkit.client import RegistryClient, SkillkitError, SkillkitHTTPError, as_skillkit_error, parse_remote_skill


def _client(handler) -> RegistryClient:
    return RegistryClient(base_url="https://registry.test/", api_key="key_123", transport=httpx.MockTransport(handler))


class TestFetchRemoteSkills(unittest.IsolatedAsyncioTestCase):
    async def test_query_params_and_has_more(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "skills": [
                        {"id": 1, "name": "alpha", "source": "acme/skills", "star_count": 3, "skill_path_sha": "s1"},
                        {"id": 2, "name": "beta", "source": "acme/skills", "description": ""},
                    ],
                    "total": 5,
                    "page": 1,
                    "page_size": 2,
                },
            )

        async with _client(handler) as client:
            page = await client.fetch_remote_skills(skip=2, limit=2, search="  pdf  ")

        request = seen[0]
        self.assertEqual(request.url.path, "/api/skills")
        self.assertEqual(request.url.params["search"], "pdf")
        self.assertEqual(request.url.params["sort_by"], "heat_score")
        self.assertEqual(request.url.params["sort_order"], "desc")
        self.assertEqual(request.url.params["skip"], "2")
        self.assertEqual(request.headers["x-api-key"], "key_123")

        self.assertEqual([s.name for s in page.skills], ["alpha", "beta"])
        self.assertEqual(page.skills[0].skill_id, "1")
        self.assertIsNone(page.skills[1].description)
        self.assertEqual(page.total, 5)
        self.assertTrue(page.has_more)

    async def test_blank_search_is_dropped_and_last_page_has_no_more(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"skills": [{"id": 5, "name": "omega", "source": "x/y"}], "total": 5, "page": 2, "page_size": 2}
            )

        async with _client(handler) as client:
            page = await client.fetch_remote_skills(search="   ", sort_by="star_count", sort_order="asc")

        self.assertNotIn("search", seen[0].url.params)
        self.assertEqual(seen[0].url.params["sort_by"], "star_count")
        self.assertFalse(page.has_more)

    async def test_empty_page_has_no_more(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"skills": [], "total": 10, "page": 0, "page_size": 20})

        async with _client(handler) as client:
            page = await client.fetch_remote_skills()

        self.assertFalse(page.has_more)


class TestFetchByNames(unittest.IsolatedAsyncioTestCase):
    async def test_empty_names_make_no_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        async with _client(handler) as client:
            self.assertEqual(await client.fetch_skills_by_names([]), [])

    async def test_names_are_comma_joined(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"id": "a1", "name": "alpha", "source": "acme/skills"}, {"bogus": True}])

        async with _client(handler) as client:
            skills = await client.fetch_skills_by_names(["alpha", "beta"])

        self.assertEqual(seen[0].url.path, "/api/skills/by-names")
        self.assertEqual(seen[0].url.params["names"], "alpha,beta")
        self.assertEqual([s.name for s in skills], ["alpha"])


class TestErrors(unittest.IsolatedAsyncioTestCase):
    async def test_http_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        async with _client(handler) as client:
            with self.assertRaises(SkillkitHTTPError) as ctx:
                await client.fetch_skills_by_names(["alpha"])

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(ctx.exception.code, "HTTP_503")

    async def test_transport_error_becomes_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler) as client:
            with self.assertRaises(SkillkitError) as ctx:
                await client.record_skill_install("42")

        self.assertEqual(ctx.exception.code, "NETWORK_ERROR")
        self.assertTrue(ctx.exception.hint)

    async def test_record_install_posts_to_skill_path(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        async with _client(handler) as client:
            await client.record_skill_install("abc")

        self.assertEqual(seen[0].method, "POST")
        self.assertEqual(seen[0].url.path, "/api/skills/abc/install")


class TestErrorNormalization(unittest.TestCase):
    def test_codes(self) -> None:
        self.assertEqual(as_skillkit_error(OSError("x")).code, "IO_ERROR")
        self.assertEqual(as_skillkit_error(ValueError("x")).code, "INVALID_INPUT")
        self.assertEqual(as_skillkit_error(RuntimeError("x")).code, "IPC_ERROR")
        err = SkillkitError("m", code="C", hint="h")
        self.assertIs(as_skillkit_error(err), err)
        self.assertEqual(err.to_dict(), {"code": "C", "message": "m", "hint": "h"})

    def test_parse_remote_skill_rejects_incomplete_records(self) -> None:
        self.assertIsNone(parse_remote_skill({"name": "x"}))
        self.assertIsNone(parse_remote_skill("nope"))
        self.assertEqual(parse_remote_skill({"id": 7, "name": "x"}).id, "7")


if __name__ == "__main__":
    unittest.main()
