"""
tests/test_cli.py -- Tests for the operator command line in main.py.

Covers:
  - totp-code prints the RFC 6238 code for a fixed time
  - totp-code rejects a secret that is not Base32
  - seed-admin creates the account once and reports the same account on rerun
  - no subcommand prints help and exits 0
"""

from __future__ import annotations

import main
from auth.store import SqlAuthStore

# RFC 6238 SHA1 test secret "12345678901234567890" in Base32.
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestTotpCode:
    def test_prints_code_for_fixed_time(self, capsys):
        assert main.main(["totp-code", "--secret", RFC_SECRET, "--at", "59"]) == 0
        assert capsys.readouterr().out.strip() == "287082"

    def test_lower_case_secret_accepted(self, capsys):
        assert main.main(["totp-code", "--secret", RFC_SECRET.lower(), "--at", "1111111109"]) == 0
        assert capsys.readouterr().out.strip() == "081804"

    def test_invalid_secret(self, capsys):
        assert main.main(["totp-code", "--secret", "not base32!", "--at", "59"]) == 1
        assert "[!]" in capsys.readouterr().err


class TestSeedAdmin:
    def test_creates_then_reuses(self, tmp_path, monkeypatch, settings_factory, capsys):
        url = f"sqlite:///{tmp_path / 'cli.db'}"
        monkeypatch.setattr(main, "get_settings", lambda: settings_factory(database_url=url))
        argv = ["seed-admin", "--email", "owner@example.com", "--password", "Own3r-Pass"]

        assert main.main(argv) == 0
        first = capsys.readouterr().out
        assert "owner@example.com" in first
        assert "role Admin" in first

        assert main.main(argv) == 0
        assert capsys.readouterr().out == first

        store = SqlAuthStore(url)
        try:
            account = store.get_account_by_email("OWNER@example.com")
        finally:
            store.close()
        assert account.role == "Admin"
        assert account.email_confirmed is True


def test_no_command_prints_help(capsys):
    assert main.main([]) == 0
    assert "seed-admin" in capsys.readouterr().out
