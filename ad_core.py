"""Core ad-creative pipeline. Used by both the web app and CLI."""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from credentials import Session
from errors import ProviderError, ValidationError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Model catalogue and defaults
# ---------------------------------------------------------------------------

DEFAULT_TEXT_MODEL = "gpt-4o"
DEFAULT_IMAGE_MODEL = "dall-e-3"
ANALYSIS_MAX_TOKENS = 400
STRATEGY_MAX_TOKENS = 600
DESCRIPTION_PREVIEW_CHARS = 100

TEXT_MODELS: List[Dict] = [
    {"id": "gpt-4o", "name": "GPT-4o ★ Recommended", "description": "Vision-capable, best analysis quality."},
    {"id": "gpt-4o-mini", "name": "GPT-4o Mini", "description": "Cheaper vision model, shorter analyses."},
    {"id": "gpt-4.1", "name": "GPT-4.1", "description": "Strong vision and long-form strategy writing."},
]

IMAGE_MODELS: List[Dict] = [
    {"id": "dall-e-3", "name": "DALL·E 3 ★ Recommended", "description": "Single 1024px ad banner, hd tier."},
    {"id": "dall-e-2", "name": "DALL·E 2", "description": "Older and cheaper. Square sizes only, no hd tier."},
]


class ImageSize(str, Enum):
    SQUARE = "1024x1024"
    LANDSCAPE = "1792x1024"
    PORTRAIT = "1024x1792"


class ImageQuality(str, Enum):
    STANDARD = "standard"
    HD = "hd"


class PipelineState(str, Enum):
    IDLE = "idle"
    ANALYZING_COMPETITOR = "analyzing_competitor"
    ANALYZING_PROJECT = "analyzing_project"
    SYNTHESIZING_STRATEGY = "synthesizing_strategy"
    GENERATING_IMAGE = "generating_image"
    SUCCEEDED = "succeeded"
    FAILED_FATAL = "failed_fatal"


BEST_EFFORT = "best_effort"
MUST_SUCCEED = "must_succeed"

# Fallback texts substituted for failed stages
COMPETITOR_FALLBACK = "Unable to analyze competitor image. Proceeding with ad generation anyway."
PROJECT_FALLBACK = "Unable to analyze project data. Proceeding with ad generation anyway."
NO_PROJECT_DATA = "No project data provided for analysis."
ANALYSIS_UNAVAILABLE = (
    "Could not perform detailed analysis, but will generate an ad creative "
    "based on the provided information."
)
STRATEGY_FALLBACK = "Based on our analysis:\n\n{competitor}\n\n{project}"


@dataclass(frozen=True)
class Stage:
    id: str
    label: str
    state: PipelineState
    policy: str
    fallback: str = ""


# Pipeline stage definitions (in execution order)
PIPELINE_STAGES: List[Stage] = [
    Stage("competitor_analysis", "Competitor Analysis", PipelineState.ANALYZING_COMPETITOR,
          BEST_EFFORT, COMPETITOR_FALLBACK),
    Stage("project_analysis", "Project Analysis", PipelineState.ANALYZING_PROJECT,
          BEST_EFFORT, PROJECT_FALLBACK),
    Stage("strategy", "Ad Strategy", PipelineState.SYNTHESIZING_STRATEGY,
          BEST_EFFORT, STRATEGY_FALLBACK),
    Stage("ad_image", "Ad Creative", PipelineState.GENERATING_IMAGE,
          MUST_SUCCEED),
]
STAGES: Dict[str, Stage] = {s.id: s for s in PIPELINE_STAGES}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _enum_value(enum_cls, raw: Any, name: str):
    try:
        return enum_cls(raw)
    except (TypeError, ValueError):
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{name} must be one of: {allowed}") from None


@dataclass
class PipelineConfig:
    model: str = DEFAULT_TEXT_MODEL
    max_tokens: int = ANALYSIS_MAX_TOKENS
    strategy_max_tokens: int = STRATEGY_MAX_TOKENS
    image_model: str = DEFAULT_IMAGE_MODEL
    image_size: ImageSize = ImageSize.SQUARE
    quality: ImageQuality = ImageQuality.HD

    def __post_init__(self) -> None:
        self.image_size = _enum_value(ImageSize, self.image_size, "image_size")
        self.quality = _enum_value(ImageQuality, self.quality, "quality")
        if not isinstance(self.model, str) or not isinstance(self.image_model, str):
            raise ValidationError("model names must be strings")
        self.max_tokens = int(self.max_tokens)
        self.strategy_max_tokens = int(self.strategy_max_tokens)
        if self.max_tokens <= 0 or self.strategy_max_tokens <= 0:
            raise ValidationError("max_tokens must be a positive integer")

    @classmethod
    def from_settings(cls, settings: Optional[Dict] = None) -> "PipelineConfig":
        """Defaults, then ADPIRATE_* environment variables, then ``settings``."""
        settings = settings or {}
        if not isinstance(settings, dict):
            raise ValidationError("settings must be an object")
        env = os.environ

        def pick(key: str, env_key: str, default: Any) -> Any:
            value = settings.get(key)
            if value in (None, ""):
                value = env.get(env_key) or default
            return value

        try:
            max_tokens = int(pick("max_tokens", "ADPIRATE_MAX_TOKENS", ANALYSIS_MAX_TOKENS))
            strategy_max_tokens = int(
                pick("strategy_max_tokens", "ADPIRATE_STRATEGY_MAX_TOKENS", STRATEGY_MAX_TOKENS)
            )
        except (TypeError, ValueError):
            raise ValidationError("max_tokens must be a positive integer") from None

        return cls(
            model=pick("text_model", "ADPIRATE_TEXT_MODEL", DEFAULT_TEXT_MODEL),
            max_tokens=max_tokens,
            strategy_max_tokens=strategy_max_tokens,
            image_model=pick("image_model", "ADPIRATE_IMAGE_MODEL", DEFAULT_IMAGE_MODEL),
            image_size=pick("image_size", "ADPIRATE_IMAGE_SIZE", ImageSize.SQUARE.value),
            quality=pick("quality", "ADPIRATE_IMAGE_QUALITY", ImageQuality.HD.value),
        )


# ---------------------------------------------------------------------------
# Inputs and results
# ---------------------------------------------------------------------------

def normalize_website_url(url: Optional[str]) -> Optional[str]:
    url = (url or "").strip()
    if not url:
        return None
    return url if url.startswith("http") else f"https://{url}"


@dataclass
class ProjectData:
    images: List[str] = field(default_factory=list)
    website_url: Optional[str] = None
    description: Optional[str] = None

    def __post_init__(self) -> None:
        images = self.images or []
        if not isinstance(images, list) or not all(isinstance(img, str) for img in images):
            raise ValidationError("project images must be a list of strings")
        for name in ("website_url", "description"):
            if not isinstance(getattr(self, name) or "", str):
                raise ValidationError(f"project {name} must be a string")
        self.images = [img for img in images if img.strip()]
        self.website_url = (self.website_url or "").strip() or None
        self.description = (self.description or "").strip() or None

    @property
    def is_empty(self) -> bool:
        return not self.images and not self.website_url and not self.description

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ProjectData":
        data = data or {}
        if not isinstance(data, dict):
            raise ValidationError("project must be an object")
        images = data.get("images") or []
        if isinstance(images, str):
            images = [images]
        website_url = data.get("website_url") or data.get("websiteUrl")
        if not isinstance(website_url or "", str):
            raise ValidationError("project website_url must be a string")
        return cls(
            images=images,
            website_url=normalize_website_url(website_url),
            description=data.get("description"),
        )


class Status(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    DEGRADED = "degraded"
    FATAL = "fatal"


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage.

    ``skipped`` means there was nothing to do, not that the stage failed.
    """

    status: Status
    text: str = ""
    reason: Optional[str] = None

    @classmethod
    def ok(cls, text: str) -> "StageResult":
        return cls(Status.OK, text)

    @classmethod
    def skipped(cls, text: str, reason: str) -> "StageResult":
        return cls(Status.SKIPPED, text, reason)

    @classmethod
    def degraded(cls, text: str, reason: str) -> "StageResult":
        return cls(Status.DEGRADED, text, reason)

    @classmethod
    def fatal(cls, reason: str) -> "StageResult":
        return cls(Status.FATAL, "", reason)

    @property
    def failed(self) -> bool:
        return self.status in (Status.DEGRADED, Status.FATAL)

    def to_dict(self) -> Dict:
        return {"status": self.status.value, "text": self.text, "reason": self.reason}


# ---------------------------------------------------------------------------
# Prompt composition
# ---------------------------------------------------------------------------

MARKETING_CONSULTANT = "You are an expert marketing consultant specializing in digital ad creatives."
COMPETITOR_BRAND = "Competitor"


def text_directive(project: ProjectData, instructions: str = "") -> str:
    """Body of the Text section of the creative prompt."""
    if instructions and instructions.strip():
        return f"Include text as specified: {instructions.strip()}"
    if project.description:
        preview = project.description[:DESCRIPTION_PREVIEW_CHARS]
        return f'Include key messaging derived from our description: "{preview}..."'
    return "Include a compelling headline and call to action."


def compose_creative_prompt(
    competitor_image: str,
    project: ProjectData,
    instructions: str = "",
) -> str:
    """Build the image-generation prompt.

    The competitor image is never inlined; the Style section only refers to
    it. Output depends on nothing but the arguments.
    """
    lines = ["Ad Creative Request:"]
    lines.append(
        f"- **Style**: Use a bold, minimalist style like {COMPETITOR_BRAND}'s "
        "latest ads (see attached image)."
    )
    if project.images:
        lines.append("- **Product**: Show our product from the attached image as the main focus.")
    else:
        lines.append("- **Product**: Create a compelling visual representation of our offering.")
    lines.append(f"- **Text**: {text_directive(project, instructions)}")
    lines.append(
        "- **Layout & Colors**: Create a clean, professional layout with balanced "
        "text and visuals. Use a black and white base with minimal purple accents for branding."
    )
    lines.append("Generate a high-quality ad banner that will convert viewers into customers.")
    return "\n".join(lines)


def _image_part(url: str) -> Dict:
    return {"type": "image_url", "image_url": {"url": url}}


def _text_part(text: str) -> Dict:
    return {"type": "text", "text": text}


def build_competitor_messages(competitor_image: str) -> List[Dict]:
    return [
        {
            "role": "system",
            "content": (
                f"{MARKETING_CONSULTANT} Analyze the competitor's image provided and identify "
                "their strengths, weaknesses, and opportunities for differentiation."
            ),
        },
        {
            "role": "user",
            "content": [
                _text_part(
                    "I'm uploading a screenshot of my competitor's app/product. Please analyze it "
                    "and provide insights on their strengths, weaknesses, and how I might "
                    "differentiate my offering."
                ),
                _image_part(competitor_image),
            ],
        },
    ]


def build_project_messages(project: ProjectData) -> List[Dict]:
    content: List[Dict] = [
        _text_part(
            "I'm sharing information about my project/offer. Please analyze it and suggest "
            "a compelling marketing approach."
        )
    ]
    for image in project.images:
        content.append(_image_part(image))
    if project.website_url:
        content.append(_text_part(f"My website URL is: {project.website_url}"))
    if project.description:
        content.append(_text_part(f"My project description: {project.description}"))

    return [
        {
            "role": "system",
            "content": (
                f"{MARKETING_CONSULTANT} Analyze the provided information about the user's "
                "project/offer and suggest a marketing approach."
            ),
        },
        {"role": "user", "content": content},
    ]


def build_strategy_messages(competitor_analysis: str, project_analysis: str) -> List[Dict]:
    return [
        {
            "role": "system",
            "content": (
                f"{MARKETING_CONSULTANT} Create a comprehensive ad strategy based on "
                "competitor and project analyses."
            ),
        },
        {
            "role": "user",
            "content": (
                f"Here is my competitor analysis:\n\n{competitor_analysis}\n\n"
                f"Here is my project analysis:\n\n{project_analysis}\n\n"
                "Based on these analyses, please create a comprehensive ad strategy that "
                "highlights my unique advantages and positions my offer effectively against "
                "the competition."
            ),
        },
    ]


# ---------------------------------------------------------------------------
# Main pipeline class
# ---------------------------------------------------------------------------

class AdPipeline:
    """Runs competitor analysis, project analysis, strategy and image generation."""

    def __init__(
        self,
        session: Session,
        config: Optional[PipelineConfig] = None,
        progress_cb: Optional[Callable[[Dict], None]] = None,
        client: Optional[Any] = None,
        run_id: str = "local",
    ) -> None:
        self.session = session
        self.config = config or PipelineConfig()
        self.progress_cb = progress_cb
        self.run_id = run_id
        self._client = client

        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]
        self.warnings: List[str] = []
        self.last_prompt: Optional[str] = None

        # Captured API calls for display
        self.api_calls: List[Dict] = []

        log.info(
            "Pipeline init: run=%s text=%s image=%s size=%s quality=%s",
            run_id, self.config.model, self.config.image_model,
            self.config.image_size.value, self.config.quality.value,
        )

    @property
    def client(self) -> Any:
        if self._client is None:
            from openai import OpenAI
            # One attempt per stage; a failed call is final for that stage.
            self._client = OpenAI(api_key=self.session.api_key, max_retries=0)
        return self._client

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    def _emit(
        self,
        stage: str,
        status: str,
        message: str,
        data: Optional[Dict] = None,
    ) -> None:
        event: Dict[str, Any] = {
            "stage": stage,
            "status": status,
            "message": message,
            "ts": time.time(),
        }
        if data:
            event["data"] = data
        if self.progress_cb:
            self.progress_cb(event)
        # Mirror to app log
        lvl = logging.WARNING if status in ("failed", "warning") else logging.DEBUG
        log.log(lvl, "[%s] %s — %s", self.run_id, stage, message)

    def _capture_api_call(self, stage: str, endpoint: str, model: str, payload: Dict) -> None:
        self.api_calls.append(
            {
                "stage": stage,
                "endpoint": endpoint,
                "model": model,
                "payload": _sanitize(payload),
                "ts": time.time(),
            }
        )

    def _enter(self, state: PipelineState) -> None:
        log.debug("[%s] state %s -> %s", self.run_id, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    # ------------------------------------------------------------------
    # Stage runner
    # ------------------------------------------------------------------

    def _run_stage(
        self,
        stage: Stage,
        call: Callable[[], str],
        **fallback_context: str,
    ) -> StageResult:
        """Run one stage and apply its declared failure policy."""
        self._enter(stage.state)
        self._emit(stage.id, "started", f"{stage.label}…")
        try:
            text = call()
        except ValidationError:
            raise
        except Exception as exc:
            reason = _describe_provider_error(exc)
            if stage.policy == BEST_EFFORT:
                fallback = stage.fallback.format(**fallback_context)
                self.warnings.append(f"{stage.label} failed: {reason}")
                self._emit(stage.id, "warning", f"{stage.label} failed — continuing: {reason}")
                return StageResult.degraded(fallback, reason)

            self._enter(PipelineState.FAILED_FATAL)
            self._emit(stage.id, "failed", f"{stage.label} failed: {reason}")
            log.error("[%s] %s failed: %s", self.run_id, stage.id, reason, exc_info=True)
            if isinstance(exc, ProviderError):
                exc.stage = exc.stage or stage.id
                raise
            raise ProviderError(reason, stage=stage.id) from exc

        self._emit(stage.id, "completed", f"{stage.label} ready")
        return StageResult.ok(text)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    def _chat(self, stage: str, messages: List[Dict], max_tokens: int) -> str:
        payload = {"model": self.config.model, "messages": messages, "max_tokens": max_tokens}
        self._capture_api_call(stage, "chat.completions", self.config.model, payload)

        t0 = time.time()
        resp = self.client.chat.completions.create(**payload)
        usage = getattr(resp, "usage", None)
        if usage is not None:
            log.info(
                "OpenAI chat [%s]: model=%s  %d in / %d out tokens  %.1fs",
                stage, self.config.model, usage.prompt_tokens, usage.completion_tokens,
                time.time() - t0,
            )
        text = (resp.choices[0].message.content or "").strip()
        if not text:
            raise ProviderError("Empty response from the model", stage=stage)
        return text

    def _generate_image(self, prompt: str) -> str:
        stage = "ad_image"
        payload = {
            "model": self.config.image_model,
            "prompt": prompt,
            "n": 1,
            "size": self.config.image_size.value,
            "quality": self.config.quality.value,
            "response_format": "url",
        }
        self._capture_api_call(stage, "images.generate", self.config.image_model, payload)

        t0 = time.time()
        resp = self.client.images.generate(**payload)
        data = getattr(resp, "data", None) or []
        url = getattr(data[0], "url", None) if data else None
        if not url:
            raise ProviderError("Image generation returned no image URL", stage=stage)
        log.info(
            "OpenAI image [%s]: model=%s  %.1fs",
            stage, self.config.image_model, time.time() - t0,
        )
        return url

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def analyze_competitor(self, competitor_image: str) -> StageResult:
        if not (competitor_image or "").strip():
            raise ValidationError("Please upload a competitor image")
        messages = build_competitor_messages(competitor_image)
        return self._run_stage(
            STAGES["competitor_analysis"],
            lambda: self._chat("competitor_analysis", messages, self.config.max_tokens),
        )

    def analyze_project(self, project: ProjectData) -> StageResult:
        if project.is_empty:
            self._emit("project_analysis", "skipped", NO_PROJECT_DATA)
            return StageResult.skipped(NO_PROJECT_DATA, "no project data")
        messages = build_project_messages(project)
        return self._run_stage(
            STAGES["project_analysis"],
            lambda: self._chat("project_analysis", messages, self.config.max_tokens),
        )

    def synthesize_strategy(self, competitor: StageResult, project: StageResult) -> StageResult:
        if competitor.failed and project.failed:
            self._enter(STAGES["strategy"].state)
            self._emit("strategy", "skipped", "Both analyses unavailable — skipping strategy")
            return StageResult.degraded(ANALYSIS_UNAVAILABLE, "both analyses failed")

        messages = build_strategy_messages(competitor.text, project.text)
        return self._run_stage(
            STAGES["strategy"],
            lambda: self._chat("strategy", messages, self.config.strategy_max_tokens),
            competitor=competitor.text,
            project=project.text,
        )

    def generate_creative(
        self,
        competitor_image: str,
        project: ProjectData,
        instructions: str = "",
    ) -> str:
        """Generate the ad image and return its URL. Failures are raised."""
        prompt = compose_creative_prompt(competitor_image, project, instructions)
        self.last_prompt = prompt
        result = self._run_stage(STAGES["ad_image"], lambda: self._generate_image(prompt))
        return result.text

    # ------------------------------------------------------------------
    # Full pipeline run
    # ------------------------------------------------------------------

    def run(
        self,
        competitor_image: str,
        project: ProjectData,
        instructions: str = "",
    ) -> Dict:
        """Execute the complete pipeline. Returns a result dict."""
        if not (competitor_image or "").strip():
            raise ValidationError("Please upload a competitor image")
        if project.is_empty:
            raise ValidationError("Please provide information about your project/offer")

        log.info(
            "Pipeline start: run=%s  project images=%d url=%s description=%s",
            self.run_id, len(project.images), bool(project.website_url), bool(project.description),
        )
        start = time.time()

        competitor = self.analyze_competitor(competitor_image)
        project_result = self.analyze_project(project)
        strategy = self.synthesize_strategy(competitor, project_result)

        analyses = {
            "competitor": competitor.to_dict(),
            "project": project_result.to_dict(),
        }
        try:
            image_url = self.generate_creative(competitor_image, project, instructions)
        except ProviderError as exc:
            exc.partial = {
                "strategy": strategy.text,
                "analyses": analyses,
                "warnings": list(self.warnings),
            }
            raise

        self._enter(PipelineState.SUCCEEDED)
        duration = time.time() - start
        log.info(
            "Pipeline complete: run=%s  %.1fs  %d warning(s)",
            self.run_id, duration, len(self.warnings),
        )
        self._emit(
            "pipeline",
            "completed",
            f"Ad creative ready in {duration:.0f}s",
            {"image_url": image_url, "duration": duration},
        )

        return {
            "strategy": strategy.text,
            "strategy_status": strategy.status.value,
            "image_url": image_url,
            "prompt": self.last_prompt,
            "analyses": analyses,
            "warnings": list(self.warnings),
            "api_calls": self.api_calls,
            "duration": duration,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _sanitize(value: Any) -> Any:
    """Shorten long strings (data URIs, prompts) for the API call log."""
    if isinstance(value, str):
        return value[:120] + "…" if len(value) > 120 else value
    if isinstance(value, dict):
        return {k: _sanitize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_sanitize(v) for v in value]
    return value


def _describe_provider_error(exc: BaseException) -> str:
    """Turn SDK and transport errors into a message fit for the user."""
    from openai import APIConnectionError, AuthenticationError, RateLimitError

    if isinstance(exc, AuthenticationError):
        return "OpenAI API key is invalid or expired."
    if isinstance(exc, RateLimitError):
        msg = str(exc)
        if "insufficient_quota" in msg or "quota" in msg.lower():
            return "OpenAI account is out of credits. Please add billing at platform.openai.com."
        return f"OpenAI rate limit: {exc}"
    if isinstance(exc, APIConnectionError):
        return f"Could not reach OpenAI: {exc}"
    return str(exc) or exc.__class__.__name__
