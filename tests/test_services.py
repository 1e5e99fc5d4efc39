import base64
from types import SimpleNamespace

import cv2
import httpx
import numpy as np
import openai
import pytest

from clipgrade.core.errors import MalformedResponseError, ServiceError, TransientServiceError
from clipgrade.services.base import coerce_critique, region_mask, strip_markdown_fences
from clipgrade.services.openai_services import (
    OpenAICritic,
    OpenAIEnhancer,
    OpenAISurgicalEditor,
    _decode_b64,
    fit_to_source,
    map_openai_error,
)

from fakes import ramp


# ---------------------------------------------------------------------------
# Critique coercion
# ---------------------------------------------------------------------------


def test_generic_payload():
    crit = coerce_critique(
        {
            "score": 7.5,
            "issues": [
                {"description": "sign in corner", "region": "top-right", "surgical": True,
                 "instruction": "remove the sign"},
                {"description": "flat contrast"},
            ],
        }
    )
    assert crit.score == 7.5
    assert [i.region for i in crit.issues] == ["top-right", "global"]
    assert [i.description for i in crit.surgical_issues] == ["sign in corner"]
    assert crit.surgical_issues[0].edit_instruction == "remove the sign"
    assert crit.global_issues[0].edit_instruction == "flat contrast"


def test_analysis_payload_in_markdown_fence():
    text = """```json
{
  "overallAssessment": "close",
  "professionalScore": 8.1,
  "noFurtherEditsNeeded": false,
  "remainingImprovements": [
    {"type": "object-removal", "description": "stray cable", "region": "bottom-left",
     "impact": "High", "imagenSuitable": true, "editInstruction": "erase the cable"}
  ]
}
```"""
    crit = coerce_critique(text)
    assert crit.score == pytest.approx(8.1)
    issue = crit.issues[0]
    assert issue.surgical
    assert issue.region == "bottom-left"
    assert issue.instruction == "erase the cable"
    assert issue.impact == "high"


def test_no_further_edits_clears_issues():
    crit = coerce_critique(
        {"professionalScore": 6, "noFurtherEditsNeeded": True,
         "remainingImprovements": [{"description": "grain"}]}
    )
    assert crit.issues == []


def test_score_is_clamped():
    assert coerce_critique({"score": 14}).score == 10.0
    assert coerce_critique({"score": -2}).score == 0.0


def test_prose_around_json_is_ignored():
    crit = coerce_critique('Here you go: {"score": 9, "issues": []} Thanks!')
    assert crit.score == 9.0


@pytest.mark.parametrize(
    "payload",
    ["not json at all", '{"issues": []}', '{"score": "high"}', {"score": 5, "issues": "many"}],
)
def test_malformed_payloads_raise(payload):
    with pytest.raises(MalformedResponseError):
        coerce_critique(payload)


def test_string_booleans_are_parsed():
    crit = coerce_critique(
        {"score": 5, "issues": [
            {"description": "a", "region": "top-left", "surgical": "false"},
            {"description": "b", "region": "top-left", "imagenSuitable": "True"},
        ], "noFurtherEditsNeeded": "false"}
    )
    assert [i.surgical for i in crit.issues] == [False, True]


def test_low_impact_issues_are_not_actionable():
    crit = coerce_critique(
        {"score": 6, "issues": [
            {"description": "grain", "impact": "Low", "surgical": True, "region": "top-left"},
            {"description": "shadows", "impact": "high"},
        ]}
    )
    assert len(crit.issues) == 2
    assert [i.description for i in crit.actionable_issues] == ["shadows"]
    assert crit.surgical_issues == []


def test_unknown_region_falls_back_to_global():
    crit = coerce_critique({"score": 5, "issues": [{"description": "x", "region": "sky", "surgical": True}]})
    assert crit.issues[0].region == "global"


def test_strip_fences_without_fence_is_noop():
    assert strip_markdown_fences('  {"a": 1} ') == '{"a": 1}'


# ---------------------------------------------------------------------------
# Region masks
# ---------------------------------------------------------------------------


def test_global_mask_covers_everything():
    assert region_mask(40, 30, "global").min() == 255


def test_top_left_mask_has_overlap_margin():
    mask = region_mask(60, 30, "top-left")
    # third width 20 plus a 3 px margin, third height 10 plus margin
    assert mask[0:13, 0:23].min() == 255
    assert mask[:, 23:].max() == 0
    assert mask[13:, :].max() == 0


def test_center_mask():
    mask = region_mask(60, 60, "center")
    assert mask[30, 30] == 255
    assert mask[0, 0] == 0 and mask[59, 59] == 0


def test_background_mask_is_edge_frame():
    mask = region_mask(50, 50, "background")
    assert mask[0, 25] == 255 and mask[49, 25] == 255
    assert mask[25, 0] == 255 and mask[25, 49] == 255
    assert mask[25, 25] == 0


def test_foreground_mask_is_centre():
    mask = region_mask(50, 50, "foreground")
    assert mask[25, 25] == 255
    assert mask[0, 0] == 0
    assert mask[10:40, 10:40].min() == 255


def test_unknown_region_raises():
    with pytest.raises(ValueError):
        region_mask(10, 10, "sky")


# ---------------------------------------------------------------------------
# Image + error helpers
# ---------------------------------------------------------------------------


def test_fit_to_source_rescales_same_aspect():
    source = ramp(32, 48)
    bigger = np.zeros((64, 96, 3), dtype=np.uint8)
    assert fit_to_source(bigger, source).shape == source.shape


def test_fit_to_source_keeps_changed_aspect():
    source = ramp(32, 48)
    square = np.zeros((64, 64, 3), dtype=np.uint8)
    assert fit_to_source(square, source).shape == (64, 64, 3)


def _response(status):
    return httpx.Response(status, request=httpx.Request("POST", "https://api.openai.com/v1/images/edits"))


def test_rate_limit_maps_to_transient():
    exc = openai.RateLimitError("slow down", response=_response(429), body=None)
    mapped = map_openai_error(exc, "enhance")
    assert isinstance(mapped, TransientServiceError)
    assert mapped.rate_limited


def test_server_error_maps_to_transient():
    exc = openai.InternalServerError("boom", response=_response(503), body=None)
    assert isinstance(map_openai_error(exc, "enhance"), TransientServiceError)


def test_timeout_maps_to_transient():
    exc = openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    assert isinstance(map_openai_error(exc, "critique"), TransientServiceError)


def test_bad_request_is_permanent():
    exc = openai.BadRequestError("bad image", response=_response(400), body=None)
    mapped = map_openai_error(exc, "enhance")
    assert isinstance(mapped, ServiceError)
    assert not isinstance(mapped, TransientServiceError)


# ---------------------------------------------------------------------------
# OpenAI services against a stub client
# ---------------------------------------------------------------------------


def _png_b64(image):
    ok, buf = cv2.imencode(".png", image)
    assert ok
    return base64.b64encode(buf.tobytes()).decode("ascii")


class StubImages:
    def __init__(self, result=None, error=None, b64=None):
        self.result = result
        self.error = error
        self.b64 = b64
        self.calls = []

    def edit(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        payload = self.b64 if self.b64 is not None else _png_b64(self.result)
        return SimpleNamespace(data=[SimpleNamespace(b64_json=payload)])


class StubCompletions:
    def __init__(self, content):
        self.content = content
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def stub_client(images=None, completions=None):
    return SimpleNamespace(images=images, chat=SimpleNamespace(completions=completions))


def test_enhancer_decodes_and_rescales_result():
    source = ramp(32, 48)
    images = StubImages(result=np.full((64, 96, 3), 120, dtype=np.uint8))
    enhancer = OpenAIEnhancer(stub_client(images=images), model="image-model")

    out = enhancer.enhance(source, "grade it")

    assert out.shape == source.shape
    assert int(out.min()) == 120 and int(out.max()) == 120
    call = images.calls[0]
    assert call["model"] == "image-model"
    assert call["prompt"] == "grade it"
    assert call["image"][0] == "frame.png"
    assert "mask" not in call


def test_enhancer_maps_sdk_errors():
    timeout = openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/images/edits"))
    enhancer = OpenAIEnhancer(stub_client(images=StubImages(error=timeout)))
    with pytest.raises(TransientServiceError):
        enhancer.enhance(ramp(), "grade it")


def test_enhancer_rejects_bad_base64():
    enhancer = OpenAIEnhancer(stub_client(images=StubImages(b64="abc")))
    with pytest.raises(MalformedResponseError):
        enhancer.enhance(ramp(), "grade it")


def test_enhancer_rejects_empty_response():
    images = StubImages(result=ramp())
    images.edit = lambda **kwargs: SimpleNamespace(data=[])
    with pytest.raises(MalformedResponseError):
        OpenAIEnhancer(stub_client(images=images)).enhance(ramp(), "grade it")


@pytest.mark.parametrize("payload", ["abc", "not base64 at all!", base64.b64encode(b"not an image").decode("ascii")])
def test_decode_rejects_garbage(payload):
    with pytest.raises(MalformedResponseError):
        _decode_b64(payload)


def test_surgical_edit_only_changes_the_masked_region():
    source = ramp(30, 60)
    white = np.full(source.shape, 255, dtype=np.uint8)
    images = StubImages(result=white)
    editor = OpenAISurgicalEditor(stub_client(images=images))

    out = editor.edit(source, "top-left", "remove the sign")

    mask = region_mask(60, 30, "top-left") > 0
    assert np.array_equal(out[~mask], source[~mask])
    assert out[mask].min() == 255
    call = images.calls[0]
    assert call["mask"][0] == "mask.png"
    assert call["prompt"] == "remove the sign"


def test_critic_sends_image_and_parses_fenced_json():
    content = '```json\n{"professionalScore": 7.5, "remainingImprovements": [{"description": "noise", "impact": "medium"}]}\n```'
    completions = StubCompletions(content)
    critic = OpenAICritic(stub_client(completions=completions), model="vision-model")

    crit = critic.critique(ramp())

    assert crit.score == pytest.approx(7.5)
    assert [i.description for i in crit.issues] == ["noise"]
    call = completions.calls[0]
    assert call["model"] == "vision-model"
    assert call["response_format"] == {"type": "json_object"}
    image_part = call["messages"][1]["content"][1]
    assert image_part["image_url"]["url"].startswith("data:image/jpeg;base64,")


def test_critic_empty_content_is_malformed():
    critic = OpenAICritic(stub_client(completions=StubCompletions("")))
    with pytest.raises(MalformedResponseError):
        critic.critique(ramp())
