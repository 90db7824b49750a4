import json

import httpx
import pytest

from mediaflow.moderation import OpenAIModerationGate, check_local_rules

PROMPT = "A watercolor painting of a quiet harbour at sunrise"


def _gate(handler, **kwargs) -> OpenAIModerationGate:
    kwargs.setdefault("api_key", "sk-test")
    kwargs.setdefault("environment", "production")
    return OpenAIModerationGate(transport=httpx.MockTransport(handler), **kwargs)


def _flagged(flagged: bool, **categories):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"results": [{"flagged": flagged, "categories": categories}]})
    return handler


def test_local_rules_allow_ordinary_prompt():
    assert check_local_rules(PROMPT) is None


@pytest.mark.parametrize("text,category", [
    ("x" * 2001, "length_exceeded"),
    ("two words", "insufficient_content"),
    ("A scene full of gore and smoke", "blocked_keywords"),
    ("How to hack a bank account quickly", "suspicious_pattern"),
])
def test_local_rules_deny(text, category):
    verdict = check_local_rules(text)
    assert verdict is not None
    assert not verdict.allowed
    assert verdict.categories == [category]


def test_local_rules_match_whole_words_only():
    # "adulthood" contains "adult", "chateau" contains "hate"
    assert check_local_rules("A portrait celebrating adulthood and family") is None
    assert check_local_rules("Children in a shaded chateau garden") is None


@pytest.mark.asyncio
async def test_gate_allows_unflagged_prompt():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"results": [{"flagged": False, "categories": {}}]})

    verdict = await _gate(handler).check_prompt(PROMPT)

    assert verdict.allowed
    assert seen["body"] == {"model": "omni-moderation-latest", "input": PROMPT}
    assert seen["auth"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_gate_denies_flagged_prompt_with_categories():
    verdict = await _gate(_flagged(True, violence=True, hate=False)).check_prompt(PROMPT)
    assert not verdict.allowed
    assert verdict.categories == ["violence"]
    assert "violence" in verdict.reason


@pytest.mark.asyncio
async def test_gate_checks_image_urls():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["input"] = json.loads(request.content)["input"]
        return httpx.Response(200, json={"results": [{"flagged": False, "categories": {}}]})

    verdict = await _gate(handler).check_image("https://images.example.com/a.png")
    assert verdict.allowed
    assert seen["input"] == [{"type": "image_url", "image_url": {"url": "https://images.example.com/a.png"}}]


@pytest.mark.asyncio
async def test_service_error_denies_in_production():
    gate = _gate(lambda request: httpx.Response(400, json={"error": "bad request"}))
    verdict = await gate.check_prompt(PROMPT)
    assert not verdict.allowed
    assert verdict.categories == ["moderation_error"]


@pytest.mark.asyncio
async def test_service_error_allowed_in_development_with_skip():
    gate = _gate(
        lambda request: httpx.Response(400, json={"error": "bad request"}),
        environment="development",
        skip=True,
    )
    assert (await gate.check_prompt(PROMPT)).allowed


@pytest.mark.asyncio
async def test_development_without_skip_still_denies():
    gate = _gate(lambda request: httpx.Response(400), environment="development")
    assert not (await gate.check_prompt(PROMPT)).allowed


@pytest.mark.asyncio
async def test_missing_api_key_denies_without_calling_service():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"results": []})

    verdict = await _gate(handler, api_key="").check_prompt(PROMPT)
    assert not verdict.allowed
    assert calls == []
