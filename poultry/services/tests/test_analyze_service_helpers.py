from __future__ import annotations

import asyncio
import base64
import io

import pytest
from PIL import Image

from poultry.services import analyze_service as svc
from poultry.shared.advisories import load_advisory_table
from poultry.shared.errors import ClassifierCallError, ClientDisconnectedError, InvalidImageError


class _FakeRequest:
    def __init__(self, disconnected: bool) -> None:
        self.disconnected = disconnected
        self.checks = 0

    async def is_disconnected(self) -> bool:
        self.checks += 1
        return self.disconnected


def test_get_provider_falls_back_to_gemini(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLASSIFIER_PROVIDER", "claude")
    assert svc._get_provider() == "gemini"

    monkeypatch.setenv("CLASSIFIER_PROVIDER", " OpenAI ")
    assert svc._get_provider() == "openai"

    monkeypatch.delenv("CLASSIFIER_PROVIDER", raising=False)
    assert svc._get_provider() == "gemini"


def test_api_keys_support_fallback_names(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setenv("GOOGLE_API_KEY", "g")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("LLM_API_KEY", "o")

    assert svc._get_gemini_api_key() == "g"
    assert svc._get_openai_api_key() == "o"


def test_missing_openai_key_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("LLM_API_KEY", raising=False)

    with pytest.raises(ClassifierCallError, match="OPENAI_API_KEY"):
        svc._get_openai_api_key()


def test_timeout_and_retry_env_parsing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CLASSIFIER_TIMEOUT_S", raising=False)
    monkeypatch.delenv("CLASSIFIER_MAX_RETRIES", raising=False)
    assert svc._get_timeout_s() == 8.0
    assert svc._get_max_retries() == 1

    monkeypatch.setenv("CLASSIFIER_TIMEOUT_S", "nope")
    monkeypatch.setenv("CLASSIFIER_MAX_RETRIES", "-3")
    assert svc._get_timeout_s() == 8.0
    assert svc._get_max_retries() == 0


@pytest.mark.parametrize("raw", ["nan", "inf", "-inf", "NaN"])
def test_non_finite_env_values_fall_back_to_defaults(monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
    monkeypatch.setenv("CLASSIFIER_TIMEOUT_S", raw)
    monkeypatch.setenv("CLASSIFIER_MAX_RETRIES", raw)

    assert svc._get_timeout_s() == 8.0
    assert svc._get_max_retries() == 1


def test_analyze_request_survives_non_finite_retry_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLASSIFIER_MAX_RETRIES", "nan")
    monkeypatch.setenv("GEMINI_API_KEY", "k")
    seen = {}

    async def _post_json(url, *, headers, payload, timeout_s, max_retries):
        seen["max_retries"] = max_retries
        return {"candidates": [{"content": {"parts": [{"text": "{}"}]}}]}

    monkeypatch.setattr(svc, "_post_json", _post_json)

    reply = asyncio.run(svc._call_gemini("QUJD", "image/jpeg"))

    assert reply.text == "{}"
    assert seen["max_retries"] == 1


def test_cors_origins_parsing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example,")
    assert svc._get_cors_origins() == ["https://a.example", "https://b.example"]

    monkeypatch.setenv("CORS_ORIGINS", " ")
    assert svc._get_cors_origins() == ["*"]


def test_load_image_rejects_garbage() -> None:
    with pytest.raises(InvalidImageError):
        svc._load_image(b"definitely not a jpeg")


def test_encode_image_downscales_and_converts() -> None:
    img = Image.new("RGBA", (2048, 1024), color=(10, 20, 30, 255))

    data, mime = svc._encode_image(img, max_side=512)

    assert mime == "image/jpeg"
    decoded = Image.open(io.BytesIO(base64.b64decode(data)))
    assert decoded.format == "JPEG"
    assert decoded.size == (512, 256)


def test_encode_image_keeps_small_images() -> None:
    data, _ = svc._encode_image(Image.new("RGB", (40, 30)))

    decoded = Image.open(io.BytesIO(base64.b64decode(data)))
    assert decoded.size == (40, 30)


def test_encode_image_applies_exif_orientation() -> None:
    exif = Image.Exif()
    exif[0x0112] = 6  # stored landscape, displayed rotated 90 degrees
    buf = io.BytesIO()
    Image.new("RGB", (40, 20), color=(120, 90, 60)).save(buf, format="JPEG", exif=exif)

    data, _ = svc._encode_image(svc._load_image(buf.getvalue()))

    decoded = Image.open(io.BytesIO(base64.b64decode(data)))
    assert decoded.size == (20, 40)


def test_build_payload_end_to_end() -> None:
    payload = svc.build_payload(
        '```json\n{"isFeces":true,"healthStatus":"healthy","confidence":"high","description":"firm, brown"}\n```',
        table=load_advisory_table(),
        meta={"request_id": "r1"},
    )

    assert payload["label"] == "healthy"
    assert payload["isSubject"] is True
    assert "Healthy" in payload["diagnosis"]
    assert payload["recommendation"].endswith("consult a poultry veterinarian.")
    assert payload["meta"] == {"request_id": "r1"}


def test_await_unless_disconnected_returns_result() -> None:
    request = _FakeRequest(disconnected=False)

    async def _quick() -> str:
        await asyncio.sleep(0.02)
        return "done"

    result = asyncio.run(svc._await_unless_disconnected(request, _quick(), poll_s=0.005))

    assert result == "done"


def test_await_unless_disconnected_cancels_on_disconnect() -> None:
    request = _FakeRequest(disconnected=True)
    state = {"cancelled": False}

    async def _slow() -> str:
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise
        return "late"

    async def _run() -> None:
        with pytest.raises(ClientDisconnectedError):
            await svc._await_unless_disconnected(request, _slow(), poll_s=0.01)
        # Let the cancelled task observe its cancellation.
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    asyncio.run(_run())

    assert request.checks == 1
    assert state["cancelled"] is True
