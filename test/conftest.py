# test/conftest.py

import pytest
from pathlib import Path
from test.helpers.fakes import FakeClock, FakeTransportFactory
from test.helpers.reporter import Reporter
from elkm1_lib.notify import Notifier

from sockline.session import Session, SessionConfig

def pytest_addoption(parser):
    parser.addoption("--sockline-live", action="store", default=None, metavar="URL")
    parser.addoption("--sockline-report", choices=["jsonl", "yaml", "both"], default="jsonl")

@pytest.fixture
def notifier():
    return Notifier()

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def transports():
    return FakeTransportFactory()

@pytest.fixture
def make_session(notifier, clock, transports):
    def _make(**cfg_kwargs):
        return Session(
            SessionConfig(**cfg_kwargs),
            transport_factory=transports,
            notifier=notifier,
            now_monotonic=clock,
        )
    return _make

@pytest.fixture
def session(make_session):
    return make_session()

@pytest.fixture
def reporter(request, pytestconfig, tmp_path):
    emit_yaml = pytestconfig.getoption("--sockline-report") in ("yaml", "both")
    r = Reporter(
        test_name=request.node.name,
        artifacts_dir=Path("artifacts/test_runs"),
        emit_yaml=emit_yaml,
    )
    yield r
    outcome = getattr(request.node, "rep_call", None)
    r.finalize(getattr(outcome, "outcome", "unknown"))

@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    rep = outcome.get_result()
    setattr(item, f"rep_{rep.when}", rep)
