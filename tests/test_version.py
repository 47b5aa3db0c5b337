import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from edgepipe.config import ClientInfo, ConfigurationStruct
from edgepipe.constants import CORE_METADATA_SERVICE_KEY
from edgepipe.version import (
    CORE_DEVELOPER_VERSION,
    CORE_PRE_RELEASE_VERSION,
    StartupTimer,
    VersionValidator,
)


class _Services:
    def __init__(self, config):
        self._config = config

    def get(self, name):
        return self._config


@pytest.fixture
def core_server():
    state = {"body": b"", "paths": []}

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            state["paths"].append(self.path)
            body = state["body"]
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield state, server.server_address[1]
    server.shutdown()
    server.server_close()


def _services(port):
    config = ConfigurationStruct(
        clients={
            CORE_METADATA_SERVICE_KEY: ClientInfo(protocol="http", host="127.0.0.1", port=port)
        }
    )
    return _Services(config)


def _body(core_version):
    if core_version == "{}":
        return b"{}"
    if core_version == "":
        return b""
    return json.dumps({"version": core_version}).encode()


@pytest.mark.parametrize(
    "core_version, sdk_version, skip, expect_failure",
    [
        ("3.1.0", "v3.0.0", False, False),
        ("3.0.0", "v3.0.0-dev.11", False, False),
        ("1.2.1-dev.1", "v1.2.0", False, False),
        ("1.2.1-dev.1", "v1.2.0-dev.4", False, False),
        ("3.0.0", "v2.0.0", False, True),
        ("3.0.0", "v2.0.0", True, False),
        ("1.0.0", "v0.0.0", False, False),
        ("1.0.0", "v0.2.0", False, False),
        ("1.0.0", "", False, True),
        (CORE_PRE_RELEASE_VERSION, "v1.0.0", False, False),
        (CORE_DEVELOPER_VERSION, "v1.0.0", False, False),
        ("12", "v1.0.0", False, True),
        ("", "v1.0.0", False, True),
        ("{}", "v1.0.0", False, True),
    ],
)
def test_validate_version_match(core_server, core_version, sdk_version, skip, expect_failure):
    state, port = core_server
    state["body"] = _body(core_version)
    timer = StartupTimer(duration=0.3, interval=0.05)
    validator = VersionValidator(skip, sdk_version)

    result = validator.bootstrap_handler(timer, _services(port))

    assert (not result) == expect_failure


def test_version_route_requested(core_server):
    state, port = core_server
    state["body"] = _body("3.1.0")
    validator = VersionValidator(False, "v3.0.0")

    assert validator.bootstrap_handler(StartupTimer(5.0, 0.05), _services(port)) is True
    assert state["paths"] == ["/api/v3/version"]


def test_missing_core_metadata_client_fails():
    validator = VersionValidator(False, "v3.0.0")
    result = validator.bootstrap_handler(
        StartupTimer(0.2, 0.05), _Services(ConfigurationStruct(clients={}))
    )
    assert result is False


def test_unreachable_core_fails_after_retries(core_server):
    _, port = core_server
    validator = VersionValidator(False, "v3.0.0")
    services = _services(1)
    start = time.monotonic()
    assert validator.bootstrap_handler(StartupTimer(0.2, 0.05), services) is False
    assert time.monotonic() - start >= 0.2


def test_startup_timer_elapses():
    assert StartupTimer(duration=60.0).has_not_elapsed() is True
    assert StartupTimer(duration=0.0).has_not_elapsed() is False


def test_startup_timer_sleep_runs_down_duration():
    timer = StartupTimer(duration=0.1, interval=0.3)
    assert timer.has_not_elapsed() is True
    start = time.monotonic()
    timer.sleep_for_interval()
    assert time.monotonic() - start >= 0.1
    assert timer.has_not_elapsed() is False