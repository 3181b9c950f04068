"""
Tests for the sdnscore command line
"""

import json

import pytest

import cli


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Config pointing at a SQLite file plus list and customer inputs"""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(cli, "setup_logging", lambda config: None)

    config_file = tmp_path / "config.yaml"
    config_file.write_text(
        f"database:\n  url: sqlite:///{tmp_path / 'cli.db'}\n"
        "scoring:\n  max_workers: 1\n  batch_size: 2\n"
    )

    list_file = tmp_path / "list.jsonl"
    list_file.write_text(
        json.dumps({"primary_name": "Juan Pérez", "city": "Caracas", "country": "VE"}) + "\n"
        + json.dumps({"primary_name": "Viktor Petrov", "alt_names": ["Victor Petroff"]}) + "\n",
        encoding="utf-8",
    )

    customers_file = tmp_path / "customers.csv"
    customers_file.write_text(
        "customer_id,name,city,country\n"
        "C-1,Juan Perez,Caracas,VE\n"
        "C-2,Maria Lopez,Lima,PE\n"
        "C-3,Victor Petroff,,\n",
        encoding="utf-8",
    )

    return {
        "config": str(config_file),
        "list": str(list_file),
        "customers": str(customers_file),
    }


def run(workspace, *args):
    return cli.main(["--config", workspace["config"], *args])


class TestCli:
    """End-to-end runs of the command line against SQLite"""

    def test_full_cycle(self, workspace, capsys):
        """init-db, ingest, score, status, list-dates and scores in sequence"""
        assert run(workspace, "init-db") == 0

        assert run(workspace, "ingest", "--jsonl", workspace["list"], "--list-date", "2024-03-01") == 0
        snapshot = json.loads(capsys.readouterr().out)
        assert snapshot["entry_count"] == 2

        assert run(workspace, "score", "--list-date", "2024-03-01", "--customers", workspace["customers"]) == 0
        scored = json.loads(capsys.readouterr().out)
        assert scored["state"] == "completed"
        assert scored["total_customers"] == 3

        assert run(workspace, "status", "--list-date", "2024-03-01") == 0
        assert json.loads(capsys.readouterr().out)["completed_count"] == 3

        assert run(workspace, "list-dates") == 0
        assert capsys.readouterr().out.split() == ["2024-03-01"]

        assert run(workspace, "scores", "--list-date", "2024-03-01", "--page-size", "2") == 0
        page = json.loads(capsys.readouterr().out)
        assert page["total"] == 3
        assert [item["customer_id"] for item in page["items"]] == ["C-1", "C-3"]

    def test_score_without_snapshot(self, workspace):
        """Scoring a date with no snapshot exits 1"""
        run(workspace, "init-db")

        assert run(workspace, "score", "--list-date", "2024-03-01", "--customers", workspace["customers"]) == 1

    def test_ingest_missing_file(self, workspace, tmp_path):
        """Ingesting a missing file exits 1"""
        run(workspace, "init-db")

        assert run(workspace, "ingest", "--jsonl", str(tmp_path / "missing.jsonl")) == 1

    def test_status_without_run(self, workspace):
        """Status of a date never scored exits 1"""
        run(workspace, "init-db")

        assert run(workspace, "status", "--list-date", "2024-03-01") == 1

    def test_invalid_date(self, workspace):
        """Malformed dates are rejected by argparse"""
        with pytest.raises(SystemExit):
            run(workspace, "status", "--list-date", "March 1st")
