import asyncio
import importlib.util
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_account.py"


@pytest.fixture
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_account", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _run_main(bootstrap, monkeypatch, *args):
    monkeypatch.setattr("sys.argv", ["bootstrap_account.py", *args])
    with pytest.raises(SystemExit) as exit_info:
        bootstrap.main()
    return exit_info.value.code


class TestBootstrapScript:
    def test_requires_database_url(self, bootstrap, monkeypatch, capsys):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        code = _run_main(
            bootstrap, monkeypatch, "--email", "owner@example.com", "--password", "Secure-Passw0rd!"
        )

        assert code == 1
        assert "DATABASE_URL must be set" in capsys.readouterr().out

    def test_requires_jwt_secret(self, bootstrap, monkeypatch, capsys):
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/campauth")
        monkeypatch.delenv("JWT_SECRET", raising=False)

        code = _run_main(
            bootstrap, monkeypatch, "--email", "owner@example.com", "--password", "Secure-Passw0rd!"
        )

        assert code == 1
        assert "JWT_SECRET must be set" in capsys.readouterr().out

    def test_memory_store_refused(self, bootstrap):
        with pytest.raises(RuntimeError, match="USE_MEMORY_STORE"):
            asyncio.run(bootstrap.bootstrap_account("owner@example.com", "Secure-Passw0rd!"))

    def test_weak_password_rejected(self, bootstrap, monkeypatch):
        code = _run_main(
            bootstrap, monkeypatch, "--email", "owner@example.com", "--password", "short"
        )
        assert code == 1
