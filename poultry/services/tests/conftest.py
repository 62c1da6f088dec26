from __future__ import annotations

from typing import Callable, Dict, List

import pytest

from poultry.services import analyze_service as svc


@pytest.fixture
def fake_classifier(monkeypatch: pytest.MonkeyPatch) -> Callable[[str], List[Dict[str, str]]]:
    """Replace the outbound call with a canned reply; returns the call log."""

    def _install(reply_text: str) -> List[Dict[str, str]]:
        calls: List[Dict[str, str]] = []

        async def _classify(image_b64: str, mime_type: str) -> svc.ClassifierReply:
            calls.append({"image_b64": image_b64, "mime_type": mime_type})
            return svc.ClassifierReply(text=reply_text, provider="gemini", model="test-model")

        monkeypatch.setattr(svc, "classify_image", _classify)
        return calls

    return _install
