from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

VARS_VERSION = "2025-12-23"


def _alias(*names: str) -> Any:
    return Field(default=None, validation_alias=AliasChoices(*names))


class _Section(BaseModel):
    # unknown keys ride along so older clients keep their fields
    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class Assets(_Section):
    product_image_url: str | None = _alias("product_image_url", "productImageUrl")
    logo_image_url: str | None = _alias("logo_image_url", "logoImageUrl")
    inspiration_image_urls: tuple[str, ...] = Field(
        default=(),
        validation_alias=AliasChoices(
            "inspiration_image_urls", "inspirationImageUrls", "style_image_urls", "styleImageUrls"
        ),
    )
    style_hero_image_url: str | None = _alias(
        "style_hero_image_url", "styleHeroImageUrl", "style_hero_url", "styleHeroUrl"
    )
    style_hero_image_urls: tuple[str, ...] = Field(
        default=(), validation_alias=AliasChoices("style_hero_image_urls", "styleHeroImageUrls")
    )
    start_image_url: str | None = _alias("start_image_url", "startImageUrl")
    end_image_url: str | None = _alias("end_image_url", "endImageUrl")
    image_url: str | None = _alias("image_url", "imageUrl", "image")
    video_url: str | None = _alias("video_url", "videoUrl", "video", "frame2_video_url", "frame2VideoUrl")
    audio_url: str | None = _alias("audio_url", "audioUrl", "audio", "frame2_audio_url", "frame2AudioUrl")
    frame2_duration_sec: float | None = _alias("frame2_duration_sec", "frame2DurationSec")


class Inputs(_Section):
    brief: str | None = _alias("brief", "user_brief", "userBrief")
    still_lane: str | None = _alias("still_lane", "stillLane", "model_lane", "modelLane", "lane", "create_lane", "createLane")
    style: str | None = None
    motion_user_brief: str | None = _alias("motion_user_brief", "motionUserBrief")
    selected_movement_style: str | None = _alias(
        "selected_movement_style", "selectedMovementStyle", "movement_style", "movementStyle"
    )
    start_image_url: str | None = _alias("start_image_url", "startImageUrl")
    end_image_url: str | None = _alias("end_image_url", "endImageUrl")
    parent_output_url: str | None = _alias("parent_output_url", "parentOutputUrl")
    type_for_me: bool = Field(
        default=False, validation_alias=AliasChoices("type_for_me", "typeForMe", "use_suggestion", "useSuggestion")
    )
    suggest_only: bool = Field(default=False, validation_alias=AliasChoices("suggest_only", "suggestOnly"))
    prompt_override: str | None = _alias(
        "prompt_override", "promptOverride", "motion_prompt_override", "motionPromptOverride"
    )
    frame2_kind: str | None = _alias("frame2_kind", "frame2Kind")
    frame2_url: str | None = _alias("frame2_url", "frame2Url")
    frame2_duration_sec: float | None = _alias("frame2_duration_sec", "frame2DurationSec")
    duration: float | None = _alias("duration", "duration_seconds", "durationSeconds")
    aspect_ratio: str | None = _alias("aspect_ratio", "aspectRatio")
    mode: str | None = _alias("mode", "kling_mode", "kmc_mode")
    negative_prompt: str | None = _alias("negative_prompt", "negativePrompt")
    generate_audio: bool | None = _alias("generate_audio", "generateAudio", "audio_enabled", "audioEnabled", "with_audio", "withAudio")
    mute: bool | None = _alias("mute", "muted")
    character_orientation: str | None = _alias("character_orientation", "characterOrientation")
    keep_original_sound: bool | None = _alias("keep_original_sound", "keepOriginalSound")
    resolution: str | None = _alias("resolution", "fabric_resolution")
    feedback: str | None = _alias("feedback", "comment")
    prompt: str | None = None
    platform: str | None = None
    session_id: str | None = _alias("session_id", "sessionId")
    title: str | None = None


class Prompts(_Section):
    clean_prompt: str | None = None
    motion_prompt: str | None = None
    sugg_prompt: str | None = None


class Feedback(_Section):
    still_feedback: str | None = _alias("still_feedback", "feedback_still", "text")
    motion_feedback: str | None = _alias("motion_feedback", "feedback_motion")


class ScanLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    index: int


class UserMessages(_Section):
    scan_lines: tuple[ScanLine, ...] = ()
    final_line: str | None = None


class Outputs(_Section):
    seedream_prediction_id: str | None = None
    nanobanana_prediction_id: str | None = None
    kling_prediction_id: str | None = None
    kling_motion_control_prediction_id: str | None = None
    fabric_prediction_id: str | None = None
    seedream_image_url: str | None = None
    nanobanana_image_url: str | None = None
    kling_video_url: str | None = None
    kling_motion_control_video_url: str | None = None
    fabric_video_url: str | None = None


class Meta(_Section):
    flow: str | None = None
    still_lane: str | None = None
    still_engine: str | None = None
    video_engine: str | None = None
    parent_generation_id: str | None = None
    session_id: str | None = None
    platform: str | None = None
    title: str | None = None


class GenerationVars(BaseModel):
    """Working state of one generation, persisted after every meaningful step.

    Instances are immutable; every update returns a new object so concurrent
    writers (the pipeline and its chatter task) never clobber each other's
    sections in place.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    version: str = VARS_VERSION
    mode: str
    pass_id: str | None = None
    output_url: str | None = None
    assets: Assets = Field(default_factory=Assets)
    inputs: Inputs = Field(default_factory=Inputs)
    prompts: Prompts = Field(default_factory=Prompts)
    feedback: Feedback = Field(default_factory=Feedback)
    user_messages: UserMessages = Field(
        default_factory=UserMessages, validation_alias=AliasChoices("user_messages", "userMessages")
    )
    outputs: Outputs = Field(default_factory=Outputs)
    meta: Meta = Field(default_factory=Meta)

    def update(self, section: str, **changes: Any) -> "GenerationVars":
        current = getattr(self, section)
        if not isinstance(current, _Section):
            raise KeyError(section)
        return self.model_copy(update={section: current.model_copy(update=changes)})

    def replace(self, **changes: Any) -> "GenerationVars":
        return self.model_copy(update=changes)

    def push_line(self, text: str | None) -> "GenerationVars":
        t = (text or "").strip()
        if not t:
            return self
        lines = self.user_messages.scan_lines
        nxt = lines + (ScanLine(text=t, index=len(lines)),)
        return self.update("user_messages", scan_lines=nxt)

    def last_line(self, fallback: str = "") -> ScanLine:
        lines = self.user_messages.scan_lines
        if lines:
            return lines[-1]
        return ScanLine(text=fallback, index=0)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_json(cls, data: Any, *, mode: str | None = None) -> "GenerationVars":
        payload = dict(data) if isinstance(data, dict) else {}
        if mode and not payload.get("mode"):
            payload["mode"] = mode
        payload.setdefault("mode", "still")
        return cls.model_validate(payload)


def make_initial_vars(
    *,
    mode: str,
    pass_id: str,
    assets: dict[str, Any] | None = None,
    inputs: dict[str, Any] | None = None,
    feedback: dict[str, Any] | None = None,
    prompts: dict[str, Any] | None = None,
) -> GenerationVars:
    return GenerationVars.model_validate(
        {
            "mode": mode,
            "pass_id": pass_id,
            "assets": assets or {},
            "inputs": inputs or {},
            "feedback": feedback or {},
            "prompts": prompts or {},
        }
    )
