from __future__ import annotations

import json

import pytest

import ad_core
from ad_core import (
    ANALYSIS_UNAVAILABLE,
    COMPETITOR_FALLBACK,
    NO_PROJECT_DATA,
    PROJECT_FALLBACK,
    PipelineState,
    ProjectData,
    StageResult,
    Status,
)
from errors import ProviderError, ValidationError

COMPETITOR = "data:image/png;base64,AAAA"
IMAGE_URL = "https://images.example/ad.png"


# -----------------------------
# Analysis stage
# -----------------------------
def test_analyze_competitor_success(make_pipeline):
    pipeline, client = make_pipeline(chat=["  Bold colors, weak CTA.  "])
    result = pipeline.analyze_competitor(COMPETITOR)

    assert result == StageResult.ok("Bold colors, weak CTA.")
    call = client.chat_calls[0]
    assert call["model"] == "gpt-4o"
    assert call["max_tokens"] == 400
    assert call["messages"][1]["content"][1]["image_url"]["url"] == COMPETITOR


def test_analyze_competitor_failure_falls_back(make_pipeline, events):
    pipeline, _ = make_pipeline(chat=[ConnectionError("network down")])
    result = pipeline.analyze_competitor(COMPETITOR)

    assert result.status is Status.DEGRADED
    assert result.text == COMPETITOR_FALLBACK
    assert "network down" in result.reason
    assert any(e["status"] == "warning" for e in events)


def test_analyze_competitor_requires_image(make_pipeline):
    pipeline, client = make_pipeline()
    with pytest.raises(ValidationError):
        pipeline.analyze_competitor("  ")
    assert client.call_count == 0


def test_analyze_project_empty_makes_no_call(make_pipeline):
    pipeline, client = make_pipeline()
    result = pipeline.analyze_project(ProjectData())

    assert result.status is Status.SKIPPED
    assert result.text == NO_PROJECT_DATA
    assert client.call_count == 0


def test_analyze_project_failure_has_own_sentinel(make_pipeline):
    pipeline, _ = make_pipeline(chat=[RuntimeError("500 from provider")])
    result = pipeline.analyze_project(ProjectData(description="Meal kits"))
    assert result.status is Status.DEGRADED
    assert result.text == PROJECT_FALLBACK


def test_empty_model_reply_counts_as_failure(make_pipeline):
    pipeline, _ = make_pipeline(chat=["   "])
    result = pipeline.analyze_project(ProjectData(description="Meal kits"))
    assert result.text == PROJECT_FALLBACK


# -----------------------------
# Strategy
# -----------------------------
def test_strategy_skipped_when_both_analyses_failed(make_pipeline):
    pipeline, client = make_pipeline()
    result = pipeline.synthesize_strategy(
        StageResult.degraded(COMPETITOR_FALLBACK, "x"),
        StageResult.degraded(PROJECT_FALLBACK, "y"),
    )
    assert result.text == ANALYSIS_UNAVAILABLE
    assert client.call_count == 0


def test_strategy_still_runs_without_project_data(make_pipeline):
    # Missing project data is not a failure; the competitor fallback alone goes to synthesis.
    pipeline, client = make_pipeline(chat=[ConnectionError("down"), "Lead with price."])
    competitor = pipeline.analyze_competitor(COMPETITOR)
    project = pipeline.analyze_project(ProjectData())

    result = pipeline.synthesize_strategy(competitor, project)
    assert result == StageResult.ok("Lead with price.")
    assert len(client.chat_calls) == 2
    assert NO_PROJECT_DATA in json.dumps(client.chat_calls[1]["messages"])


def test_strategy_runs_when_one_analysis_succeeded(make_pipeline):
    pipeline, client = make_pipeline(chat=["Lead with speed."])
    result = pipeline.synthesize_strategy(
        StageResult.degraded(COMPETITOR_FALLBACK, "x"),
        StageResult.ok("Fast checkout."),
    )
    assert result == StageResult.ok("Lead with speed.")
    assert client.chat_calls[0]["max_tokens"] == 600


def test_strategy_branches_on_tag_not_text(make_pipeline):
    # An analysis that happens to mention the fallback wording is still genuine.
    pipeline, client = make_pipeline(chat=["Strategy."])
    pipeline.synthesize_strategy(
        StageResult.ok("Unable to analyze why they chose teal."),
        StageResult.ok("Unable to analyze pricing from the screenshot."),
    )
    assert len(client.chat_calls) == 1


def test_strategy_failure_concatenates_analyses(make_pipeline):
    pipeline, _ = make_pipeline(chat=[TimeoutError("timed out")])
    result = pipeline.synthesize_strategy(StageResult.ok("C"), StageResult.ok("P"))
    assert result.status is Status.DEGRADED
    assert result.text == "Based on our analysis:\n\nC\n\nP"


# -----------------------------
# Creative generation
# -----------------------------
def test_generate_creative_request_parameters(make_pipeline):
    pipeline, client = make_pipeline(images=[IMAGE_URL])
    url = pipeline.generate_creative(COMPETITOR, ProjectData(description="Meal kits"), "Order now")

    assert url == IMAGE_URL
    call = client.image_calls[0]
    assert call["n"] == 1
    assert call["size"] == "1024x1024"
    assert call["quality"] == "hd"
    assert call["response_format"] == "url"
    assert call["prompt"] == pipeline.last_prompt
    assert "Include text as specified: Order now" in call["prompt"]


def test_generate_creative_failure_is_raised(make_pipeline, events):
    pipeline, _ = make_pipeline(images=[ConnectionError("boom")])
    with pytest.raises(ProviderError) as info:
        pipeline.generate_creative(COMPETITOR, ProjectData(description="Meal kits"))

    assert info.value.stage == "ad_image"
    assert "boom" in str(info.value)
    assert pipeline.state is PipelineState.FAILED_FATAL
    assert events[-1]["status"] == "failed"


def test_generate_creative_without_url_is_fatal(make_pipeline):
    pipeline, _ = make_pipeline(images=[None])
    with pytest.raises(ProviderError, match="no image URL"):
        pipeline.generate_creative(COMPETITOR, ProjectData(description="Meal kits"))


def test_config_overrides_reach_the_provider(make_pipeline):
    config = ad_core.PipelineConfig(
        model="gpt-4o-mini", max_tokens=200, image_size="1792x1024", quality="standard"
    )
    pipeline, client = make_pipeline(chat=["c", "p", "s"], images=[IMAGE_URL], config=config)
    pipeline.run(COMPETITOR, ProjectData(description="Meal kits"))

    assert {c["model"] for c in client.chat_calls} == {"gpt-4o-mini"}
    assert client.chat_calls[0]["max_tokens"] == 200
    assert client.image_calls[0]["size"] == "1792x1024"
    assert client.image_calls[0]["quality"] == "standard"


# -----------------------------
# Full run
# -----------------------------
def test_run_happy_path(make_pipeline, events):
    pipeline, client = make_pipeline(
        chat=["competitor insight", "project insight", "unified strategy"],
        images=[IMAGE_URL],
    )
    result = pipeline.run(COMPETITOR, ProjectData(website_url="https://shop.example"))

    assert result["strategy"] == "unified strategy"
    assert result["image_url"] == IMAGE_URL
    assert result["warnings"] == []
    assert result["analyses"]["competitor"]["status"] == "ok"
    assert len(client.chat_calls) == 3
    assert pipeline.history == [
        PipelineState.IDLE,
        PipelineState.ANALYZING_COMPETITOR,
        PipelineState.ANALYZING_PROJECT,
        PipelineState.SYNTHESIZING_STRATEGY,
        PipelineState.GENERATING_IMAGE,
        PipelineState.SUCCEEDED,
    ]
    assert events[-1]["stage"] == "pipeline"
    assert events[-1]["status"] == "completed"


def test_run_both_analyses_fail_still_generates_image(make_pipeline):
    pipeline, client = make_pipeline(
        chat=[ConnectionError("down"), ConnectionError("down")],
        images=[IMAGE_URL],
    )
    result = pipeline.run(COMPETITOR, ProjectData(description="A faster checkout flow"))

    assert result["strategy"] == ANALYSIS_UNAVAILABLE
    assert result["image_url"] == IMAGE_URL
    assert len(client.chat_calls) == 2
    assert len(result["warnings"]) == 2
    assert (
        '- **Text**: Include key messaging derived from our description: "A faster checkout flow..."'
        in client.image_calls[0]["prompt"]
    )
    assert pipeline.state is PipelineState.SUCCEEDED


def test_run_image_failure_carries_partial_results(make_pipeline):
    pipeline, _ = make_pipeline(
        chat=["c", "p", "the strategy"],
        images=[RuntimeError("content policy violation")],
    )
    with pytest.raises(ProviderError) as info:
        pipeline.run(COMPETITOR, ProjectData(description="Meal kits"))

    assert info.value.partial["strategy"] == "the strategy"
    assert pipeline.history[-1] is PipelineState.FAILED_FATAL
    assert PipelineState.SUCCEEDED not in pipeline.history


@pytest.mark.parametrize(
    "competitor, project",
    [
        ("", ProjectData(description="Meal kits")),
        (COMPETITOR, ProjectData()),
        (COMPETITOR, ProjectData(images=["", "  "], website_url=" ", description="")),
    ],
)
def test_run_rejects_missing_input_before_any_call(make_pipeline, competitor, project):
    pipeline, client = make_pipeline()
    with pytest.raises(ValidationError):
        pipeline.run(competitor, project)
    assert client.call_count == 0
    assert pipeline.history == [PipelineState.IDLE]


def test_api_calls_are_captured_with_truncated_payloads(make_pipeline):
    long_image = "data:image/png;base64," + "A" * 5000
    pipeline, _ = make_pipeline(chat=["c", "p", "s"], images=[IMAGE_URL])
    result = pipeline.run(long_image, ProjectData(description="Meal kits"))

    stages = [c["stage"] for c in result["api_calls"]]
    assert stages == ["competitor_analysis", "project_analysis", "strategy", "ad_image"]
    image_part = result["api_calls"][0]["payload"]["messages"][1]["content"][1]["image_url"]["url"]
    assert len(image_part) <= 121
