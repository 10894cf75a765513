"""Pydantic DTOs shared across the queue, bridge and HTTP endpoints."""

from __future__ import annotations

from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from adcapture.errors import DirectiveParseError

BOOKMARKLET_SCHEME = "bookmarklet"
NAMED_INJECTION_TYPES = frozenset({"AD543"})


class DeviceUI(str, Enum):
    """Device family a record should be captured on."""

    ANDROID = "Android"
    IOS = "iOS"
    DESKTOP = "Desktop"

    @property
    def device_type(self) -> str:
        return self.value.lower()

    @property
    def is_mobile(self) -> bool:
        return self is not DeviceUI.DESKTOP


class InjectionDirective(BaseModel):
    """Structured ad-injection request attached to a record."""

    model_config = ConfigDict(frozen=True)

    kind: str = Field(description="'bookmarklet' for templates or 'named' for AD543-style injections")
    template: str = Field(description="Template or injection name")
    params: dict[str, str] = Field(default_factory=dict)


def parse_directive(raw: str) -> InjectionDirective:
    """Parse ``bookmarklet:<template>:k=v,k2=v2`` into an :class:`InjectionDirective`.

    Pairs missing a key or a value are dropped. Raises
    :class:`DirectiveParseError` when the scheme or template name is absent.
    """

    parts = raw.split(":")
    if len(parts) < 2 or parts[0].strip() != BOOKMARKLET_SCHEME:
        raise DirectiveParseError(f"Invalid bookmarklet directive: {raw!r}")
    template = parts[1].strip()
    if not template:
        raise DirectiveParseError(f"Bookmarklet directive is missing a template name: {raw!r}")

    params: dict[str, str] = {}
    param_blob = ":".join(parts[2:])
    for pair in param_blob.split(","):
        key, _, value = pair.partition("=")
        key, value = key.strip(), value.strip()
        if key and value:
            params[key] = value
    return InjectionDirective(kind=BOOKMARKLET_SCHEME, template=template, params=params)


def is_directive(selector: str | None) -> bool:
    return bool(selector) and selector.strip().startswith(f"{BOOKMARKLET_SCHEME}:")


class AdRecord(BaseModel):
    """One ad placement to capture; identity is ``(pid, uid)``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    website_url: str = Field(alias="WebsiteURL", description="Page hosting the ad")
    pid: str = Field(alias="PID", description="Placement identifier")
    uid: str = Field(alias="UID", description="Unit identifier")
    ad_type: str = Field(default="", alias="AdType")
    selector: str = Field(alias="Selector", description="CSS selector of the ad element")
    device_ui: DeviceUI = Field(alias="DeviceUI")
    injection: InjectionDirective | None = Field(default=None)
    injection_type: str | None = Field(default=None, alias="BookmarkletType")
    ad_format: str | None = Field(default=None, alias="AdFormat")
    source: str | None = Field(default=None, alias="Source")
    play_mode: str | None = Field(default=None, alias="PlayMode")
    player: str | None = Field(default=None, alias="Player")
    video_url: str | None = Field(default=None, alias="VideoURL")
    click_url: str | None = Field(default=None, alias="ClickURL")
    campaign_url: str | None = Field(default=None, alias="CampaignURL")
    target_iframe: str | None = Field(default=None, alias="TargetIframe")

    @model_validator(mode="before")
    @classmethod
    def _lift_legacy_directives(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        values = dict(data)
        selector_key = "Selector" if "Selector" in values else "selector"
        selector = values.get(selector_key)
        if isinstance(selector, str) and is_directive(selector) and not values.get("injection"):
            directive = parse_directive(selector.strip())
            values["injection"] = directive
            values[selector_key] = directive.params.get("selector", "body")

        type_key = "BookmarkletType" if "BookmarkletType" in values else "injection_type"
        ad_type = values.get("AdType", values.get("ad_type"))
        if not values.get(type_key) and isinstance(ad_type, str) and ad_type.upper() in NAMED_INJECTION_TYPES:
            values[type_key] = ad_type.upper()
        return values

    @field_validator("device_ui", mode="before")
    @classmethod
    def _normalize_device(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in DeviceUI:
                if member.device_type == lowered:
                    return member
        return value

    @field_validator("pid", "uid", mode="before")
    @classmethod
    def _coerce_identifier(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(int(value))
        return value

    @property
    def key(self) -> tuple[str, str]:
        return (self.pid, self.uid)

    @property
    def named_injection(self) -> str | None:
        if self.injection_type and self.injection_type.upper() in NAMED_INJECTION_TYPES:
            return self.injection_type.upper()
        return None

    @property
    def has_injection(self) -> bool:
        return self.injection is not None or self.named_injection is not None


class BridgeCommandType(str, Enum):
    SCREENSHOT = "screenshot"
    HIGHLIGHT = "highlight"
    OVERLAY = "overlay"
    EXTRACT_DATA = "extract_data"
    MOBILE_SCREENSHOT = "mobile_screenshot"
    CONFIGURE_MOBILE_UI = "configure_mobile_ui"


class BridgeCommand(BaseModel):
    """Command broadcast to connected overlay renderers."""

    type: BridgeCommandType
    target: str | None = Field(default=None, description="CSS selector the command applies to")
    data: dict[str, Any] | None = None
    options: dict[str, Any] | None = None
    command_id: str = Field(default_factory=lambda: uuid4().hex)


class SendCommandRequest(BridgeCommand):
    """HTTP payload for ``POST /send-command``."""

    wait_for_response: bool = Field(default=False, description="Block until renderers answer")
    timeout_ms: int | None = Field(default=None, ge=1)


class CommandResult(BaseModel):
    connection_id: str
    success: bool
    error: str | None = None
    data: dict[str, Any] | None = None


class BroadcastResult(BaseModel):
    """Outcome of sending one command to every connection.

    ``sent`` counts delivered commands; ``failed`` counts connections whose
    result is unsuccessful, so a delivered command that never got a reply
    counts in both.
    """

    sent: int = 0
    failed: int = 0
    results: list[CommandResult] = Field(default_factory=list)

    @property
    def any_success(self) -> bool:
        return self.sent > 0 and any(result.success for result in self.results)


class BatchSubmitRequest(BaseModel):
    records: list[AdRecord] = Field(min_length=1)
    priority: int | None = Field(default=None, description="Queue priority rank (higher first)")


class BatchSubmitResponse(BaseModel):
    batch_id: str
    enqueued: int
    skipped: int
