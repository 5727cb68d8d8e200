"""
Unit tests for the command line interface.

Origins are replaced by in-memory sinks; configuration and the journal live in
a temporary directory.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from statesync import cli
from statesync.reconciliation.models import Operation
from statesync.reconciliation.report import Outcome, ReconciliationReport


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "statesync.yaml"
    path.write_text(
        f"journal_dir: {tmp_path / 'journal'}\n"
        "entities:\n"
        "  item:\n"
        "    identity_field: id\n"
        "    fields:\n"
        "      name: string\n"
        "origins:\n"
        "  desired:\n"
        "    type: file\n"
        "    path: items.yaml\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture(autouse=True)
def no_vault(monkeypatch):
    monkeypatch.delenv("VAULT_ADDR", raising=False)
    monkeypatch.delenv("VAULT_TOKEN", raising=False)


@pytest.fixture
def run_cli(config_file, capsys):
    """Run main() against in-memory origins and return (exit code, parsed stdout)."""
    def _run(sources, *args):
        with patch("statesync.cli.build_sources", return_value=(sources, [])):
            code = cli.main(["--config", str(config_file)] + list(args))
        out = capsys.readouterr().out
        return code, json.loads(out) if out.strip() else None
    return _run


class TestParseFilter:

    def test_equals_and_contains(self):
        result = cli.parse_filter(["active=true"], ["slug=a,b"])

        assert result.equals == {"active": "true"}
        assert result.contains == {"slug": ["a", "b"]}

    def test_no_arguments(self):
        assert cli.parse_filter(None, None) is None

    def test_invalid_argument(self):
        with pytest.raises(ValueError, match="expected field=value"):
            cli.parse_filter(["active"], None)


class TestExitCode:

    def report(self, state, reason=None, outcome=None):
        report = ReconciliationReport("run-1", ["item"], "a", "b")
        if outcome is not None:
            report.record(Operation.create("item", 1, {"id": 1}), outcome, reason="x")
        report.finish(state, reason)
        return report

    def test_done(self):
        assert cli.exit_code_for(self.report("done")) == cli.EXIT_OK

    def test_done_with_failures(self):
        assert cli.exit_code_for(self.report("done", outcome=Outcome.FAILED)) == cli.EXIT_FAILED

    def test_done_with_mismatch(self):
        report = self.report("done", outcome=Outcome.VERIFICATION_MISMATCH)

        assert cli.exit_code_for(report) == cli.EXIT_FAILED

    def test_awaiting_confirmation(self):
        report = self.report("failed", "unconfirmed destructive plan")

        assert cli.exit_code_for(report) == cli.EXIT_AWAITING_CONFIRMATION

    def test_failed(self):
        assert cli.exit_code_for(self.report("failed", "cancelled")) == cli.EXIT_FAILED


class TestCommands:
    """Test CLI commands end to end."""

    def test_reconcile(self, run_cli, make_sink):
        desired = make_sink("desired", {"item": [{"id": 1, "name": "a"}]})
        actual = make_sink("actual", {"item": []})

        code, output = run_cli(
            {"desired": desired, "actual": actual},
            "reconcile", "--kinds", "item", "--from", "desired", "--to", "actual",
        )

        assert code == cli.EXIT_OK
        assert output["summary"]["state"] == "done"
        assert actual.records["item"] == [{"id": 1, "name": "a"}]

    def test_destructive_reconcile_needs_confirmation(self, run_cli, make_sink):
        desired = make_sink("desired", {"item": []})
        actual = make_sink("actual", {"item": [{"id": 7, "name": "stale"}]})

        code, output = run_cli(
            {"desired": desired, "actual": actual},
            "reconcile", "--kinds", "item", "--from", "desired", "--to", "actual", "--destructive",
        )

        assert code == cli.EXIT_AWAITING_CONFIRMATION
        assert output["plan"]["delete_count"] == 1
        assert actual.calls == []

    def test_plan_then_confirmed_reconcile(self, run_cli, make_sink):
        desired = make_sink("desired", {"item": []})
        actual = make_sink("actual", {"item": [{"id": 7, "name": "stale"}]})
        sources = {"desired": desired, "actual": actual}
        run_args = ["--kinds", "item", "--from", "desired", "--to", "actual", "--destructive"]

        code, plan = run_cli(sources, "plan", *run_args)

        assert code == cli.EXIT_OK
        assert plan["needs_confirmation"] is True
        assert actual.calls == []

        code, _ = run_cli(sources, "reconcile", *run_args, "--confirm", plan["summary"]["fingerprint"])

        assert code == cli.EXIT_OK
        assert actual.records["item"] == []

    def test_fetch_failure_prints_report(self, run_cli, make_sink):
        from statesync.reconciliation.errors import FetchFailure

        desired = make_sink("desired", {"item": []})
        actual = make_sink("actual", {"item": []})
        actual.fetch_error = FetchFailure("unreachable", origin="actual")

        code, output = run_cli(
            {"desired": desired, "actual": actual},
            "reconcile", "--kinds", "item", "--from", "desired", "--to", "actual",
        )

        assert code == cli.EXIT_FAILED
        assert output["summary"]["state"] == "failed"

    def test_status_lists_journaled_runs(self, run_cli, make_sink, tmp_path):
        run_cli(
            {"desired": make_sink("desired", {"item": [{"id": 1, "name": "a"}]}), "actual": make_sink("actual")},
            "reconcile", "--kinds", "item", "--from", "desired", "--to", "actual",
        )

        code, output = run_cli({}, "status")

        assert code == cli.EXIT_OK
        assert len(output) == 1
        assert output[0]["state"] == "done"

    def test_missing_config(self, tmp_path):
        assert cli.main(["--config", str(tmp_path / "absent.yaml"), "status"]) == cli.EXIT_FAILED

    def test_no_command(self, config_file):
        assert cli.main(["--config", str(config_file)]) == cli.EXIT_FAILED


class TestVaultHealth:
    """Test the Vault check made before origins are built."""

    def vault(self, healthy):
        from statesync.utils.vault_client import HealthStatus

        vault = MagicMock()
        vault.vault_url = "https://vault.test:8200"
        vault.health_check.return_value = HealthStatus(
            healthy=healthy,
            authenticated=True,
            sealed=not healthy,
            error=None if healthy else "Vault is sealed",
        )
        return vault

    def test_unhealthy_vault_aborts_before_origins(self, config_file):
        with patch("statesync.cli.VaultClient.from_env", return_value=self.vault(False)), \
                patch("statesync.cli.build_sources") as build_sources:
            code = cli.main(["--config", str(config_file), "plan", "--kinds", "item", "--from", "desired", "--to", "actual"])

        assert code == cli.EXIT_FAILED
        build_sources.assert_not_called()

    def test_healthy_vault_resolves_secrets(self, run_cli, make_sink):
        vault = self.vault(True)
        sources = {"desired": make_sink("desired", {"item": []}), "actual": make_sink("actual", {"item": []})}

        with patch("statesync.cli.VaultClient.from_env", return_value=vault), \
                patch("statesync.cli.resolve_secrets") as resolve_secrets:
            code, _ = run_cli(sources, "plan", "--kinds", "item", "--from", "desired", "--to", "actual")

        assert code == cli.EXIT_OK
        vault.health_check.assert_called_once_with()
        assert resolve_secrets.call_args[0][1] is vault
