import pytest

from policy import Guardrails, MutationsDisabledError, NotFoundError, PolicyError, ValidationFailedError
from storage import build_storage
from test_helpers import ENVIRONMENTS, SERVICES, make_settings


def _guardrails(monkeypatch, tmp_path, **kwargs):
    settings = make_settings(monkeypatch, tmp_path, **kwargs)
    return Guardrails(build_storage(settings), settings)


@pytest.mark.parametrize("version", ["1.0.0", "v2.10.3", "1.0.0-rc.1"])
def test_valid_versions(monkeypatch, tmp_path, version):
    _guardrails(monkeypatch, tmp_path).validate_version(version)


@pytest.mark.parametrize("version", ["latest", "1.0", "1.0.0+build", ""])
def test_invalid_versions(monkeypatch, tmp_path, version):
    with pytest.raises(ValidationFailedError) as excinfo:
        _guardrails(monkeypatch, tmp_path).validate_version(version)
    assert excinfo.value.code == "INVALID_VERSION"


def test_unknown_service_and_environment(monkeypatch, tmp_path):
    guardrails = _guardrails(monkeypatch, tmp_path)
    with pytest.raises(NotFoundError) as excinfo:
        guardrails.validate_service("ledger")
    assert excinfo.value.code == "SERVICE_NOT_FOUND"
    entry = guardrails.validate_service("payments")
    with pytest.raises(NotFoundError) as excinfo:
        guardrails.validate_environment("staging", entry)
    assert excinfo.value.code == "ENVIRONMENT_NOT_FOUND"


def test_environment_must_be_allowed_for_service(monkeypatch, tmp_path):
    services = [{**SERVICES[0], "allowed_environments": ["dev"]}]
    guardrails = _guardrails(monkeypatch, tmp_path, services=services)
    entry = guardrails.validate_service("payments")
    with pytest.raises(PolicyError) as excinfo:
        guardrails.validate_environment("prod", entry)
    assert excinfo.value.status_code == 403
    assert excinfo.value.code == "ENVIRONMENT_NOT_ALLOWED"


def test_previous_environment_skips_disabled(monkeypatch, tmp_path):
    environments = ENVIRONMENTS + [
        {"name": "staging", "order": 5, "is_enabled": False},
        {"name": "edge", "order": 9},
    ]
    guardrails = _guardrails(monkeypatch, tmp_path, environments=environments)
    storage = guardrails.storage
    assert guardrails.previous_environment(storage.get_environment("dev")) is None
    assert guardrails.previous_environment(storage.get_environment("prod")).name == "dev"
    assert guardrails.previous_environment(storage.get_environment("edge")).name == "prod"


def test_mutations_disabled(monkeypatch, tmp_path):
    with pytest.raises(MutationsDisabledError):
        _guardrails(monkeypatch, tmp_path, RELAY_MUTATIONS_DISABLED="true").require_mutations_enabled()
