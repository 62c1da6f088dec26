"""Poultry droppings analysis service.

Accepts one uploaded photo of chicken droppings, asks an external vision model
to classify it, and returns the classification enriched with static advisory
text from `poultry/shared/advisories.yaml`.

- Multipart upload: `image` (required).
- Classifier provider is `gemini` (default) or `openai` (env: `CLASSIFIER_PROVIDER`).
- The model's reply may be wrapped in markdown fences; it is stripped, parsed,
  validated and enriched. Unparseable replies are reported, never retried.
- Success: {isSubject, label, confidence, description, diagnosis, recommendation, meta}
- Failure: {error, code, details, tips, request_id}

Run (from repo root):
  uvicorn poultry.services.analyze_service:app --host 0.0.0.0 --port 3000
  python -m poultry.services.analyze_service

Quick curl:
  curl -X POST http://127.0.0.1:3000/analyze -F "image=@droppings.jpg"
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
from uuid import uuid4

import httpx
from fastapi import FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from PIL import Image, ImageOps

from poultry.shared.advisories import AdvisoryTable, advise, get_advisory_table
from poultry.shared.analysis_contract import (
    OutwardPayload,
    PayloadMeta,
    assemble_payload,
    error_payload,
    normalize_classification,
)
from poultry.shared.errors import (
    AnalysisError,
    ClassifierCallError,
    ClientDisconnectedError,
    InputMissingError,
    InvalidImageError,
    ResponseFormatError,
)
from poultry.shared.response_parsing import extract_json_object


LOGGER = logging.getLogger(__name__)

SERVICE_VERSION = "1.2.0"

PROVIDERS = ("gemini", "openai")
DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
OPENAI_URL = "https://api.openai.com/v1/responses"

# 429 and 5xx are worth one more attempt; everything else is final.
TRANSIENT_STATUS = frozenset({429, 500, 502, 503, 504})
RETRY_DELAY_S = 0.5
DISCONNECT_POLL_S = 0.25
MAX_IMAGE_SIDE = 1024

CLASSIFIER_PROMPT = (
    "Analyze this image of chicken feces and determine its health status:\n"
    "1. Healthy: Brown with white urate cap, firm consistency.\n"
    "2. Coccidiosis: Bloody/reddish, watery.\n"
    "3. Newcastle: Greenish, watery diarrhea.\n\n"
    "If the image is not chicken feces, set isFeces to false and healthStatus to \"unknown\".\n"
    "If it is chicken feces but the status cannot be determined, set healthStatus to \"unknown\".\n\n"
    "Respond in JSON format ONLY, with this exact structure:\n"
    "{\n"
    '  "isFeces": boolean,\n'
    '  "healthStatus": "healthy|coccidiosis|newcastle|unknown",\n'
    '  "confidence": "high|medium|low",\n'
    '  "description": "string"\n'
    "}"
)

T = TypeVar("T")


@dataclass(frozen=True)
class ClassifierReply:
    text: str
    provider: str
    model: str


def _error(exc: AnalysisError, request_id: str) -> JSONResponse:
    payload = error_payload(
        exc.public_message,
        exc.code,
        str(exc) or exc.public_message,
        request_id,
    )
    return JSONResponse(status_code=exc.status_code, content=payload)


def _get_provider() -> str:
    provider = os.getenv("CLASSIFIER_PROVIDER", "gemini").strip().lower()
    if provider not in PROVIDERS:
        LOGGER.warning("Unknown CLASSIFIER_PROVIDER %r, using gemini", provider)
        return "gemini"
    return provider


def _get_gemini_api_key() -> str:
    key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    if not key:
        raise ClassifierCallError("Missing GEMINI_API_KEY (or GOOGLE_API_KEY) for provider=gemini")
    return key


def _get_openai_api_key() -> str:
    key = os.getenv("OPENAI_API_KEY") or os.getenv("LLM_API_KEY")
    if not key:
        raise ClassifierCallError("Missing OPENAI_API_KEY (or LLM_API_KEY) for provider=openai")
    return key


def _get_number_env(name: str, default: float, cast: Callable[[float], Any] = float) -> Any:
    """Finite number from env, else `default` (nan/inf included)."""

    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        if not math.isfinite(value):
            raise ValueError(f"{name} must be finite")
        return cast(value)
    except ValueError:
        LOGGER.warning("Invalid %s=%r, using %s", name, raw, default)
        return default


def _get_timeout_s() -> float:
    return max(0.5, _get_number_env("CLASSIFIER_TIMEOUT_S", 8.0))


def _get_max_retries() -> int:
    return max(0, _get_number_env("CLASSIFIER_MAX_RETRIES", 1, int))


def _get_cors_origins() -> List[str]:
    raw = os.getenv("CORS_ORIGINS", "*")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or ["*"]


def _load_image(data: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
        # Avoid returning an Image bound to a closed fp.
        img.load()
    except Exception as exc:  # noqa: BLE001 - user input parsing
        raise InvalidImageError(f"Could not read the uploaded file as an image: {exc}") from exc
    return img


def _encode_image(img: Image.Image, max_side: int = MAX_IMAGE_SIDE) -> Tuple[str, str]:
    """Downscale + re-encode as JPEG; returns (base64 data, mime type)."""

    # Phone photos are often stored sideways with an EXIF rotation tag.
    img_rgb = ImageOps.exif_transpose(img).convert("RGB")
    w, h = img_rgb.size
    scale = min(1.0, float(max_side) / float(max(w, h)))
    if scale < 1.0:
        new_w = max(1, int(round(w * scale)))
        new_h = max(1, int(round(h * scale)))
        img_rgb = img_rgb.resize((new_w, new_h), resample=Image.BICUBIC)

    buf = io.BytesIO()
    img_rgb.save(buf, format="JPEG", quality=90, optimize=True)
    return base64.b64encode(buf.getvalue()).decode("ascii"), "image/jpeg"


def _gemini_payload(image_b64: str, mime_type: str) -> Dict[str, Any]:
    return {
        "contents": [
            {
                "role": "user",
                "parts": [
                    {"text": CLASSIFIER_PROMPT},
                    {"inline_data": {"mime_type": mime_type, "data": image_b64}},
                ],
            }
        ],
        "generationConfig": {"temperature": 0.2, "responseMimeType": "application/json"},
    }


def _extract_gemini_text(resp_json: Dict[str, Any]) -> str:
    candidates = resp_json.get("candidates") or []
    texts: List[str] = []
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        content = candidates[0].get("content") or {}
        for part in content.get("parts", []) or []:
            if isinstance(part, dict) and "text" in part:
                texts.append(str(part["text"]))
    text = "".join(texts).strip()
    if not text:
        feedback = resp_json.get("promptFeedback") or {}
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        suffix = f" (blocked: {reason})" if reason else ""
        raise ResponseFormatError(f"Gemini response did not contain text{suffix}")
    return text


def _openai_payload(model: str, image_b64: str, mime_type: str) -> Dict[str, Any]:
    return {
        "model": model,
        "max_output_tokens": 400,
        "input": [
            {
                "role": "user",
                "content": [
                    {"type": "input_text", "text": CLASSIFIER_PROMPT},
                    {
                        "type": "input_image",
                        "image_url": f"data:{mime_type};base64,{image_b64}",
                        "detail": "low",
                    },
                ],
            }
        ],
    }


def _extract_responses_output_text(resp_json: Dict[str, Any]) -> str:
    output = resp_json.get("output", [])
    texts: List[str] = []
    if isinstance(output, list):
        for item in output:
            if not isinstance(item, dict) or item.get("type") != "message":
                continue
            for content in item.get("content", []) or []:
                if isinstance(content, dict) and content.get("type") == "output_text":
                    texts.append(str(content.get("text", "")))
    text = "".join(texts).strip()
    if not text:
        raise ResponseFormatError("OpenAI response did not contain output_text")
    return text


def _extract_error_json(resp: httpx.Response) -> Dict[str, Any]:
    try:
        payload = resp.json()
    except Exception:  # noqa: BLE001 - best effort only
        return {}
    return payload if isinstance(payload, dict) else {}


def _describe_call_error(exc: Exception) -> str:
    """Compact, non-secret summary of an outbound failure."""

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return "Classifier request timed out"

    if isinstance(exc, httpx.HTTPStatusError):
        status = int(exc.response.status_code)
        err = _extract_error_json(exc.response).get("error", {})
        if not isinstance(err, dict):
            err = {}
        # Gemini reports `status`, OpenAI reports `code`/`type`.
        code = str(err.get("status") or err.get("code") or err.get("type") or "").strip()
        message = str(err.get("message", "")).strip()
        if not message:
            snippet = (exc.response.text or "").strip().replace("\n", " ")
            message = snippet[:200] if snippet else "request failed"
        prefix = f"HTTP {status}" + (f" {code}" if code else "")
        return f"Classifier {prefix}: {message[:200]}"

    if isinstance(exc, httpx.RequestError):
        return f"Classifier network error: {exc.__class__.__name__}"

    return f"Classifier call failed: {exc.__class__.__name__}"


async def _post_json(
    url: str,
    *,
    headers: Dict[str, str],
    payload: Dict[str, Any],
    timeout_s: float,
    max_retries: int,
) -> Dict[str, Any]:
    """POST with a bounded timeout; retry only transient failures.

    `httpx.Timeout` only bounds each socket phase; `wait_for` caps the whole
    attempt, including a slowly delivered body.
    """

    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s)) as client:
        for attempt in range(max_retries + 1):
            try:
                resp = await asyncio.wait_for(
                    client.post(url, headers=headers, json=payload),
                    timeout=timeout_s,
                )
            except (httpx.TransportError, asyncio.TimeoutError) as exc:
                if attempt < max_retries:
                    LOGGER.warning("Classifier transport error (%s), retrying", exc.__class__.__name__)
                    await asyncio.sleep(RETRY_DELAY_S)
                    continue
                raise ClassifierCallError(_describe_call_error(exc)) from exc
            except httpx.RequestError as exc:
                raise ClassifierCallError(_describe_call_error(exc)) from exc

            if resp.status_code in TRANSIENT_STATUS and attempt < max_retries:
                LOGGER.warning("Classifier returned HTTP %s, retrying", resp.status_code)
                await asyncio.sleep(RETRY_DELAY_S)
                continue

            try:
                resp.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise ClassifierCallError(_describe_call_error(exc)) from exc

            try:
                body = resp.json()
            except ValueError as exc:
                raise ResponseFormatError("Classifier returned a non-JSON HTTP body") from exc
            if not isinstance(body, dict):
                raise ResponseFormatError("Classifier returned an unexpected HTTP body")
            return body

    raise ClassifierCallError("Classifier call failed")


async def _call_gemini(image_b64: str, mime_type: str) -> ClassifierReply:
    api_key = _get_gemini_api_key()
    model = os.getenv("GEMINI_MODEL", DEFAULT_GEMINI_MODEL).strip() or DEFAULT_GEMINI_MODEL
    # Header, not ?key=: httpx error messages echo the URL.
    headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}
    body = await _post_json(
        GEMINI_URL.format(model=model),
        headers=headers,
        payload=_gemini_payload(image_b64, mime_type),
        timeout_s=_get_timeout_s(),
        max_retries=_get_max_retries(),
    )
    return ClassifierReply(text=_extract_gemini_text(body), provider="gemini", model=model)


async def _call_openai(image_b64: str, mime_type: str) -> ClassifierReply:
    api_key = _get_openai_api_key()
    model = os.getenv("OPENAI_VISION_MODEL", DEFAULT_OPENAI_MODEL).strip() or DEFAULT_OPENAI_MODEL
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    body = await _post_json(
        OPENAI_URL,
        headers=headers,
        payload=_openai_payload(model, image_b64, mime_type),
        timeout_s=_get_timeout_s(),
        max_retries=_get_max_retries(),
    )
    return ClassifierReply(text=_extract_responses_output_text(body), provider="openai", model=model)


CLASSIFIERS: Dict[str, Callable[[str, str], Awaitable[ClassifierReply]]] = {
    "gemini": _call_gemini,
    "openai": _call_openai,
}


async def classify_image(image_b64: str, mime_type: str) -> ClassifierReply:
    return await CLASSIFIERS[_get_provider()](image_b64, mime_type)


async def _await_unless_disconnected(
    request: Request,
    awaitable: Awaitable[T],
    *,
    poll_s: float = DISCONNECT_POLL_S,
) -> T:
    """Await `awaitable`, cancelling it if the inbound client goes away."""

    task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_s)
            if done:
                return task.result()
            if await request.is_disconnected():
                raise ClientDisconnectedError("Client disconnected before the analysis finished")
    finally:
        if not task.done():
            task.cancel()


def build_payload(
    reply_text: str,
    *,
    table: AdvisoryTable,
    meta: Optional[PayloadMeta] = None,
) -> OutwardPayload:
    """Reply text -> validated classification -> enriched outward payload."""

    raw = extract_json_object(reply_text)
    result = normalize_classification(raw)
    advice = advise(table, result)
    return assemble_payload(
        result,
        diagnosis=advice.diagnosis,
        recommendation=advice.recommendation,
        advisory_description=advice.description,
        meta=meta,
    )


ADVISORIES = get_advisory_table()

app = FastAPI(title="Poultry Droppings Analysis Service", version=SERVICE_VERSION)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(404)
async def not_found_handler(request: Request, __) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"detail": "Not Found", "path": request.url.path},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # e.g. `image` sent as a plain text field instead of a file part.
    request_id = str(uuid4())
    LOGGER.info("Rejected upload %s: %s", request_id, exc.errors())
    return _error(InputMissingError("Attach a photo file in the 'image' form field."), request_id)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Cross-Origin-Resource-Policy"] = "same-origin"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    # Analyses are per-upload; never let proxies cache them.
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/analyze")
async def analyze(
    request: Request,
    image: Optional[UploadFile] = File(default=None),
) -> JSONResponse:
    t0 = time.perf_counter()
    request_id = str(uuid4())

    try:
        # 1) Intake: the classifier is never called without a readable image.
        if image is None:
            raise InputMissingError("Attach a photo in the 'image' form field.")
        image_bytes = await image.read()
        if not image_bytes:
            raise InputMissingError("The uploaded image is empty.")
        img = _load_image(image_bytes)
        image_b64, mime_type = _encode_image(img)

        # 2) Classification call.
        reply = await _await_unless_disconnected(request, classify_image(image_b64, mime_type))

        # 3) Normalization + enrichment.
        meta: PayloadMeta = {
            "request_id": request_id,
            "provider": reply.provider,
            "model": reply.model,
            "latency_ms": int(round((time.perf_counter() - t0) * 1000.0)),
        }
        payload = build_payload(reply.text, table=ADVISORIES, meta=meta)
    except InputMissingError as exc:
        LOGGER.info("Rejected upload %s: %s", request_id, exc.code)
        return _error(exc, request_id)
    except AnalysisError as exc:
        LOGGER.warning("Analysis %s failed (%s): %s", request_id, exc.code, exc)
        return _error(exc, request_id)
    except Exception:  # noqa: BLE001 - never crash on a single request
        LOGGER.exception("Analysis %s failed unexpectedly", request_id)
        return _error(AnalysisError("Unexpected server error"), request_id)

    LOGGER.info(
        "Analysis %s: label=%s confidence=%s provider=%s",
        request_id,
        payload["label"],
        payload["confidence"],
        meta["provider"],
    )
    return JSONResponse(status_code=200, content=payload)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "3000")))
