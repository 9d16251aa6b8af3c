from main import _http_error, _load_app_version
from errors import (
    BudgetValidationError,
    EntitlementVerificationError,
    FeatureLimitError,
    NotFoundError,
    PersistenceError,
    StoreError,
)


def test_app_version_comes_from_pyproject(tmp_path, monkeypatch):
    (tmp_path / "pyproject.toml").write_text('[project]\nname = "x"\nversion = "9.9.9"\n')
    monkeypatch.chdir(tmp_path)
    assert _load_app_version() == "9.9.9"


def test_app_version_unknown_without_pyproject(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert _load_app_version() == "unknown"
    (tmp_path / "pyproject.toml").write_text("not = [valid")
    assert _load_app_version() == "unknown"


def test_errors_map_to_status_codes():
    assert _http_error(NotFoundError("x")).status_code == 404
    assert _http_error(FeatureLimitError("x")).status_code == 402
    assert _http_error(BudgetValidationError("x")).status_code == 400
    assert _http_error(StoreError("x")).status_code == 502
    assert _http_error(EntitlementVerificationError("x")).status_code == 502
    persistence = _http_error(PersistenceError("disk full"))
    assert persistence.status_code == 500
    assert persistence.detail == "Could not save changes"
