import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from persona_workers import gemini
from persona_workers.pipeline.errors import PermanentServiceError


def test_parse_plain_json():
    assert gemini._parse_json_response('{"a": 1}') == {"a": 1}


def test_parse_fenced_json():
    text = '```json\n{"quality": {"overall": 0.9}}\n```'
    assert gemini._parse_json_response(text) == {"quality": {"overall": 0.9}}


def test_parse_garbage_is_permanent():
    with pytest.raises(PermanentServiceError):
        gemini._parse_json_response("not json at all")


def test_analyze_image_extracts_candidate_text():
    doc = {"quality": {"overall": 0.8}}
    result = {"candidates": [{"content": {"parts": [{"text": json.dumps(doc)}]}}]}

    with patch.object(gemini, "download_image_bytes", AsyncMock(return_value=b"jpeg")), \
            patch.object(gemini, "_generate_content", AsyncMock(return_value=result)) as generate:
        analysis = asyncio.run(gemini.analyze_image("https://img.test/a.png"))

    assert analysis == doc
    parts = generate.call_args.kwargs["parts"]
    assert parts[0]["inlineData"]["mimeType"] == "image/png"


def test_analyze_image_without_candidates_is_permanent():
    with patch.object(gemini, "download_image_bytes", AsyncMock(return_value=b"jpeg")), \
            patch.object(gemini, "_generate_content", AsyncMock(return_value={"candidates": []})):
        with pytest.raises(PermanentServiceError):
            asyncio.run(gemini.analyze_image("https://img.test/a.jpg"))
