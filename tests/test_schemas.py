from __future__ import annotations

import pytest
from pydantic import ValidationError

from adcapture.devices import DEVICE_PROFILES, profile_for
from adcapture.errors import DirectiveParseError, ErrorType
from adcapture.schemas import AdRecord, BroadcastResult, CommandResult, DeviceUI, parse_directive

from conftest import make_record


def test_parse_bookmarklet_directive_into_template_and_params() -> None:
    directive = parse_directive("bookmarklet:highlighter:selector=.ad,color=#ff0000")

    assert directive.kind == "bookmarklet"
    assert directive.template == "highlighter"
    assert directive.params == {"selector": ".ad", "color": "#ff0000"}


def test_parse_directive_keeps_colons_in_values_and_drops_empty_pairs() -> None:
    directive = parse_directive("bookmarklet:page-scanner:selector=a:hover, =x,empty=,types=video|iframe")

    assert directive.params == {"selector": "a:hover", "types": "video|iframe"}


@pytest.mark.parametrize("raw", ["highlighter:selector=.ad", "bookmarklet:", "bookmarklet: :x=1"])
def test_parse_directive_rejects_malformed_input(raw: str) -> None:
    with pytest.raises(DirectiveParseError) as excinfo:
        parse_directive(raw)
    assert excinfo.value.error_type is ErrorType.PARSING_ERROR


def test_ad_record_lifts_selector_directive_into_injection() -> None:
    record = make_record(selector="bookmarklet:highlighter:selector=.ad-slot,color=#ff0000")

    assert record.injection is not None
    assert record.injection.template == "highlighter"
    assert record.selector == ".ad-slot"
    assert record.has_injection


def test_ad_record_directive_without_selector_targets_body() -> None:
    record = make_record(selector="bookmarklet:page-scanner:types=video")

    assert record.selector == "body"
    assert record.injection is not None
    assert record.injection.params == {"types": "video"}


def test_ad_record_accepts_original_column_names_and_coerces_ids() -> None:
    record = AdRecord.model_validate(
        {
            "WebsiteURL": "https://publisher.example/article",
            "PID": 1234,
            "UID": 98,
            "AdType": "ad543",
            "Selector": "#player",
            "DeviceUI": "ios",
            "AdFormat": "instream",
        }
    )

    assert record.pid == "1234"
    assert record.uid == "98"
    assert record.device_ui is DeviceUI.IOS
    assert record.device_ui.is_mobile
    assert record.named_injection == "AD543"
    assert record.injection is None
    assert record.key == ("1234", "98")


def test_ad_record_is_frozen() -> None:
    record = make_record()
    with pytest.raises(ValidationError):
        record.pid = "other"  # type: ignore[misc]


def test_ad_record_rejects_unknown_device() -> None:
    with pytest.raises(ValidationError):
        make_record(device="Smartwatch")


def test_profile_lookup_by_device_type() -> None:
    assert profile_for("android").name == "Samsung Galaxy S23"
    assert profile_for("IOS").name == "iPhone 14 Pro"
    desktop = profile_for("desktop")
    assert (desktop.width, desktop.height, desktop.device_scale_factor) == (1920, 1080, 1)
    assert desktop.context_options()["viewport"] == {"width": 1920, "height": 1080}
    assert "iPad Pro" in DEVICE_PROFILES


def test_profile_lookup_rejects_unknown_device() -> None:
    with pytest.raises(DirectiveParseError):
        profile_for("smartwatch")


def test_broadcast_result_any_success() -> None:
    empty = BroadcastResult()
    assert not empty.any_success

    mixed = BroadcastResult(
        sent=1,
        failed=1,
        results=[
            CommandResult(connection_id="a", success=False, error="timeout"),
            CommandResult(connection_id="b", success=True),
        ],
    )
    assert mixed.any_success
