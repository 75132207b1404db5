import logging

import pytest

from harvest.services.images import NoImageFound, resolve_image, should_handle


SONOMA = "ghcr.io/cirruslabs/macos-sonoma"
VENTURA = "ghcr.io/cirruslabs/macos-ventura"
SUPPORTED = [SONOMA, VENTURA]


def test_resolves_single_match() -> None:
    assert resolve_image(["self-hosted", SONOMA], SUPPORTED) == SONOMA


def test_no_match_raises_with_labels() -> None:
    with pytest.raises(NoImageFound) as excinfo:
        resolve_image(["self-hosted", "linux"], SUPPORTED)
    assert excinfo.value.labels == ["self-hosted", "linux"]
    assert "self-hosted, linux" in str(excinfo.value)


def test_multiple_matches_pick_first_in_supported_order(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="harvest.services.images")
    assert resolve_image([VENTURA, SONOMA], SUPPORTED) == SONOMA
    assert f"{SONOMA}, {VENTURA}" in caplog.text


def test_patterns_are_compared_literally() -> None:
    supported = ["ghcr.io/cirruslabs/*"]
    assert not should_handle([SONOMA], supported)
    assert resolve_image(["ghcr.io/cirruslabs/*"], supported) == "ghcr.io/cirruslabs/*"


def test_should_handle_matches_resolution() -> None:
    assert should_handle(["self-hosted", VENTURA], SUPPORTED)
    assert not should_handle(["ubuntu-latest"], SUPPORTED)
    assert not should_handle([], SUPPORTED)
