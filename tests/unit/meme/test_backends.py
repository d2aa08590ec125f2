import asyncio
import base64
import json
from typing import Any, Dict, List

import httpx
import pytest

from common import global_config
from src.services.meme.backend import (
    FastApiBackend,
    RsApiBackend,
    detect_backend,
    probe_version,
)
from src.services.meme.backend import fast_api, rs_api
from src.services.meme.errors import BackendError, MalformedBackendResponse, ToolsUnavailable
from tests.unit.meme.meme_test_base import BASE_URL, TIMEOUTS, MemeTestBase, mock_client

FAST_PETPET_INFO = {
    "key": "petpet",
    "keywords": ["摸", "摸摸"],
    "tags": ["animation"],
    "params_type": {
        "min_images": 1,
        "max_images": 1,
        "min_texts": 0,
        "max_texts": 0,
        "default_texts": [],
        "args_type": {
            "args_model": {
                "properties": {
                    "circle": {"type": "boolean", "default": False, "description": "round crop"},
                    "user_infos": {"type": "array", "default": []},
                }
            },
            "parser_options": [
                {
                    "names": ["--circle", "-c"],
                    "dest": "circle",
                    "action": {"type": 0, "value": True},
                }
            ],
        },
    },
    "shortcuts": [{"key": "摸摸头", "args": ["--circle"], "humanized": None}],
    "date_created": "2022-03-09T00:00:00",
    "date_modified": "2023-02-14T00:00:00",
}

FAST_GENDER_INFO = {
    "key": "marry",
    "keywords": ["结婚"],
    "params_type": {
        "min_images": 1,
        "max_images": 2,
        "args_type": {
            "args_model": {
                "properties": {
                    "gender": {
                        "anyOf": [{"type": "null"}, {"type": "string"}],
                        "enum": ["male", "female", "unknown"],
                        "default": "unknown",
                    }
                }
            },
            "parser_options": [
                {"names": ["-g", "--gender"], "dest": "gender"},
                {"names": ["--male"], "dest": "gender", "action": {"type": 0, "value": "male"}},
            ],
        },
    },
}

RS_PETPET_INFO = {
    "key": "petpet",
    "keywords": ["摸"],
    "tags": ["animation"],
    "params": {
        "min_images": 1,
        "max_images": 1,
        "min_texts": 0,
        "max_texts": 0,
        "default_texts": [],
        "options": [
            {
                "type": "boolean",
                "name": "circle",
                "default": False,
                "description": "round crop",
                "parser_flags": {
                    "short": True,
                    "long": True,
                    "short_aliases": [],
                    "long_aliases": ["round"],
                },
            }
        ],
    },
    "shortcuts": [
        {
            "pattern": "摸摸头",
            "humanized": None,
            "names": [],
            "texts": [],
            "options": {"circle": True},
        }
    ],
    "date_created": "2022-03-09T00:00:00",
    "date_modified": "2023-02-14T00:00:00",
}

RS_DRAKE_INFO = {
    "key": "drake",
    "keywords": ["drake"],
    "params": {"min_images": 0, "max_images": 0, "min_texts": 2, "max_texts": 2},
}


class TestInfoParsing(MemeTestBase):
    def test_fast_info(self):
        info = fast_api.parse_info(FAST_PETPET_INFO, "petpet")

        assert info.key == "petpet"
        assert info.keywords == ["摸", "摸摸"]
        assert (info.min_images, info.max_images) == (1, 1)
        assert [o.name for o in info.options] == ["circle"]
        circle = info.options[0]
        assert circle.type == "boolean"
        assert circle.aliases == ["c"]
        assert circle.flag_values == {"circle": True, "c": True}
        assert info.shortcuts[0].pattern == "摸摸头"
        assert info.shortcuts[0].args == ["--circle"]
        assert info.complete

    def test_fast_info_store_const_alias(self):
        info = fast_api.parse_info(FAST_GENDER_INFO, "marry")
        gender = info.option("male")

        assert gender is not None and gender.name == "gender"
        assert gender.type == "string"
        assert gender.choices == ["male", "female", "unknown"]
        assert gender.aliases == ["g", "male"]
        assert gender.flag_values == {"male": "male"}
        assert info.max_texts is None

    def test_rs_info(self):
        info = rs_api.parse_info(RS_PETPET_INFO, "petpet")

        circle = info.option("round")
        assert circle is not None and circle.name == "circle"
        assert circle.aliases == ["c", "round"]
        assert info.shortcuts[0].args == ["--circle=true"]

    @pytest.mark.parametrize(
        "parse, data",
        [
            (fast_api.parse_info, {"key": "x"}),
            (fast_api.parse_info, ["not", "a", "dict"]),
            (fast_api.parse_info, {"key": "x", "params_type": {"min_images": 3, "max_images": 1}}),
            (rs_api.parse_info, {"key": "x"}),
            (rs_api.parse_info, {"key": "x", "params": {"min_texts": 2, "max_texts": 1}}),
        ],
    )
    def test_malformed_info(self, parse, data):
        with pytest.raises(MalformedBackendResponse) as excinfo:
            parse(data, "x")
        assert excinfo.value.stage == "info"


class TestFastApiBackend(MemeTestBase):
    @pytest.fixture
    def requests(self) -> List[httpx.Request]:
        return []

    @pytest.fixture
    def backend(self, requests):
        def handle(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            path = request.url.path
            if path == "/memes/keys":
                return httpx.Response(200, json=["petpet", "marry"])
            if path == "/memes/petpet/info":
                return httpx.Response(200, json=FAST_PETPET_INFO)
            if path == "/memes/broken/info":
                return httpx.Response(200, text="<html>oops</html>")
            if path == "/memes/petpet/":
                return httpx.Response(200, content=b"GIF89a-rendered")
            if path == "/memes/drake/":
                return httpx.Response(200, content=b"GIF89a-drake")
            if path == "/memes/blank/":
                return httpx.Response(200, content=b"")
            if path == "/memes/slow/":
                raise httpx.ReadTimeout("timed out", request=request)
            if path == "/memes/petpet/preview":
                return httpx.Response(200, content=b"PNG-preview")
            return httpx.Response(404, json={"detail": "Not Found"})

        return FastApiBackend(BASE_URL + "/", mock_client(handle), TIMEOUTS)

    @pytest.mark.asyncio
    async def test_list_keys(self, backend):
        assert await backend.list_keys() == ["petpet", "marry"]

    @pytest.mark.asyncio
    async def test_get_info(self, backend, requests):
        info = await backend.get_info("petpet")
        assert info.key == "petpet"
        assert str(requests[0].url) == f"{BASE_URL}/memes/petpet/info"

    @pytest.mark.asyncio
    async def test_unknown_key_keeps_status(self, backend):
        with pytest.raises(BackendError) as excinfo:
            await backend.get_info("nope")
        assert excinfo.value.status_code == 404
        assert excinfo.value.stage == "info"
        assert "Not Found" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_non_json_info_is_malformed(self, backend):
        with pytest.raises(MalformedBackendResponse):
            await backend.get_info("broken")

    @pytest.mark.asyncio
    async def test_get_infos_collects_failures(self, backend):
        results = await backend.get_infos(["petpet", "nope"])
        assert results["petpet"].key == "petpet"
        assert isinstance(results["nope"], BackendError)

    @pytest.mark.asyncio
    async def test_generate_sends_multipart(self, backend, requests):
        data = await backend.generate(
            "petpet",
            [b"img-one", b"img-two"],
            ["hello", "世界"],
            {"circle": True},
            image_names=["42", ""],
        )

        assert data == b"GIF89a-rendered"
        request = requests[-1]
        assert request.method == "POST"
        assert request.url.path == "/memes/petpet/"
        assert request.headers["content-type"].startswith("multipart/form-data")
        body = request.content
        assert b'name="images"; filename="image0"' in body
        assert b'name="images"; filename="image1"' in body
        assert b"img-one" in body and b"img-two" in body
        assert body.count(b'name="texts"') == 2
        assert "世界".encode() in body
        args = json.dumps({"circle": True, "user_infos": [{"name": "42"}, {"name": ""}]})
        assert args.encode() in body

    @pytest.mark.asyncio
    async def test_generate_without_images_is_still_multipart(self, backend, requests):
        data = await backend.generate("drake", [], ["top", "bottom"], {})

        assert data == b"GIF89a-drake"
        request = requests[-1]
        assert request.headers["content-type"].startswith("multipart/form-data")
        body = request.content
        assert body.count(b'name="texts"') == 2
        assert b"top" in body and b"bottom" in body
        assert b'name="args"' in body
        assert b"filename" not in body

    @pytest.mark.asyncio
    async def test_generate_empty_body_is_malformed(self, backend):
        with pytest.raises(MalformedBackendResponse) as excinfo:
            await backend.generate("blank", [b"img"], [], {})
        assert excinfo.value.stage == "generate"

    @pytest.mark.asyncio
    async def test_generate_timeout(self, backend):
        with pytest.raises(BackendError) as excinfo:
            await backend.generate("slow", [b"img"], [], {})
        assert excinfo.value.stage == "generate"
        assert excinfo.value.status_code is None
        assert "timed out" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_preview(self, backend):
        assert await backend.get_preview("petpet") == b"PNG-preview"

    @pytest.mark.asyncio
    async def test_no_image_tools(self, backend, requests):
        with pytest.raises(ToolsUnavailable) as excinfo:
            await backend.image_operation("invert", b"raw")
        assert excinfo.value.stage == "tool"
        assert requests == []


class TestRsApiBackend(MemeTestBase):
    @pytest.fixture
    def state(self) -> Dict[str, Any]:
        return {
            "uploads": [],
            "generated": [],
            "tools": [],
            "bulk_status": 200,
            "bulk": [RS_PETPET_INFO],
        }

    @pytest.fixture
    def backend(self, state):
        def handle(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path == "/meme/keys":
                return httpx.Response(200, json=["petpet", "drake"])
            if path == "/meme/infos":
                return httpx.Response(state["bulk_status"], json=state["bulk"])
            if path == "/memes/petpet/info":
                return httpx.Response(200, json=RS_PETPET_INFO)
            if path == "/memes/drake/info":
                return httpx.Response(200, json=RS_DRAKE_INFO)
            if path == "/image/upload":
                body = json.loads(request.content)
                state["uploads"].append(body)
                return httpx.Response(200, json={"image_id": f"up{len(state['uploads'])}"})
            if path == "/memes/petpet":
                state["generated"].append(json.loads(request.content))
                return httpx.Response(200, json={"image_id": "out1"})
            if path == "/memes/drake":
                return httpx.Response(200, json={"error": "no image"})
            if path == "/tools/image_operations/rotate":
                state["tools"].append(json.loads(request.content))
                return httpx.Response(200, json={"image_id": "out1"})
            if path == "/memes/petpet/preview":
                return httpx.Response(200, json={"image_id": "pre1"})
            if path == "/image/out1":
                return httpx.Response(200, content=b"GIF89a-rs")
            if path == "/image/pre1":
                return httpx.Response(200, content=b"PNG-rs-preview")
            return httpx.Response(404, text="not found")

        return RsApiBackend(BASE_URL, mock_client(handle), TIMEOUTS)

    @pytest.mark.asyncio
    async def test_list_keys(self, backend):
        assert await backend.list_keys() == ["petpet", "drake"]

    @pytest.mark.asyncio
    async def test_bulk_infos(self, backend, state):
        state["bulk"] = [RS_PETPET_INFO, RS_DRAKE_INFO]
        results = await backend.get_infos(["petpet", "drake"])
        assert results["petpet"].option("c").name == "circle"
        assert results["drake"].min_texts == 2

    @pytest.mark.asyncio
    async def test_bulk_missing_key_is_an_error(self, backend):
        results = await backend.get_infos(["petpet", "drake"])
        assert results["petpet"].key == "petpet"
        assert isinstance(results["drake"], BackendError)

    @pytest.mark.asyncio
    async def test_bulk_failure_falls_back_per_key(self, backend, state):
        state["bulk_status"] = 404
        results = await backend.get_infos(["petpet", "drake"])
        assert results["petpet"].key == "petpet"
        assert results["drake"].key == "drake"

    @pytest.mark.asyncio
    async def test_generate_uploads_then_fetches(self, backend, state):
        data = await backend.generate(
            "petpet",
            [b"first", b"second"],
            ["hi"],
            {"circle": True},
            image_names=["42", ""],
        )

        assert data == b"GIF89a-rs"
        assert [u["type"] for u in state["uploads"]] == ["data", "data"]
        assert sorted(base64.b64decode(u["data"]) for u in state["uploads"]) == [
            b"first",
            b"second",
        ]
        payload = state["generated"][0]
        assert sorted(image["id"] for image in payload["images"]) == ["up1", "up2"]
        assert [image["name"] for image in payload["images"]] == ["42", ""]
        assert payload["texts"] == ["hi"]
        assert payload["options"] == {"circle": True}

    @pytest.mark.asyncio
    async def test_generate_without_image_id_is_malformed(self, backend):
        with pytest.raises(MalformedBackendResponse) as excinfo:
            await backend.generate("drake", [], ["a", "b"], {})
        assert excinfo.value.stage == "generate"

    @pytest.mark.asyncio
    async def test_preview_goes_through_image_store(self, backend):
        assert await backend.get_preview("petpet") == b"PNG-rs-preview"

    @pytest.mark.asyncio
    async def test_image_operation_uploads_then_fetches(self, backend, state):
        data = await backend.image_operation("rotate", b"raw", degrees=90.0)

        assert data == b"GIF89a-rs"
        assert base64.b64decode(state["uploads"][0]["data"]) == b"raw"
        assert state["tools"] == [{"image_id": "up1", "degrees": 90.0}]

    @pytest.mark.asyncio
    async def test_unknown_tool_is_a_tool_error(self, backend):
        with pytest.raises(BackendError) as excinfo:
            await backend.image_operation("melt", b"raw")
        assert excinfo.value.stage == "tool"
        assert excinfo.value.status_code == 404

    @pytest.mark.asyncio
    async def test_failed_upload_cancels_the_others(self):
        cancelled = []
        hanging = asyncio.Event()

        async def handle(request: httpx.Request) -> httpx.Response:
            data = base64.b64decode(json.loads(request.content)["data"])
            if data == b"slow":
                hanging.set()
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    cancelled.append(data)
                    raise
            await hanging.wait()
            return httpx.Response(500, json={"detail": "disk full"})

        backend = RsApiBackend(BASE_URL, mock_client(handle), TIMEOUTS)
        with pytest.raises(BackendError) as excinfo:
            await backend.generate("kiss", [b"slow", b"bad"], [], {})

        assert excinfo.value.stage == "upload"
        assert cancelled == [b"slow"]


class TestDetectBackend(MemeTestBase):
    def backend_config(self, variant: str = "auto"):
        return global_config.meme_backend.model_copy(
            update={"base_url": BASE_URL, "variant": variant}
        )

    def version_client(self, version_body: str, status_code: int = 200):
        def handle(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/meme/version"
            return httpx.Response(status_code, text=version_body)

        return mock_client(handle)

    @pytest.mark.asyncio
    async def test_python_service_version(self):
        backend = await detect_backend(self.backend_config(), self.version_client('"0.1.11"'))
        assert isinstance(backend, FastApiBackend)
        assert backend.version == "0.1.11"

    @pytest.mark.asyncio
    async def test_other_version_selects_rs(self):
        backend = await detect_backend(self.backend_config(), self.version_client("0.2.0"))
        assert isinstance(backend, RsApiBackend)

    @pytest.mark.asyncio
    async def test_fixed_variant_skips_version_check(self):
        def handle(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        backend = await detect_backend(self.backend_config("rs"), mock_client(handle))
        assert isinstance(backend, RsApiBackend)
        assert backend.version is None

    @pytest.mark.asyncio
    async def test_unreachable_service(self):
        with pytest.raises(BackendError) as excinfo:
            await probe_version(BASE_URL, self.version_client("", status_code=503), 1)
        assert excinfo.value.stage == "version"
        assert excinfo.value.status_code == 503
