import pytest

pytest.importorskip("sdbus")

import mvdcoapp_portal as portal


def test_uri_to_path():
    assert portal.uri_to_path("file:///home/me/My%20Videos") == "/home/me/My Videos"
    assert portal.uri_to_path("https://example.com/a") is None
