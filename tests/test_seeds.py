"""Tests for seed discovery and execution."""

from __future__ import annotations

import stat
import textwrap

import pytest

from release_spine.config import ReleaseConfig
from release_spine.connector import close_stores, connect_store, connect_stores
from release_spine.errors import SeedError
from release_spine.migrations import run_migrations
from release_spine.seeds import (
    SeedKind,
    SeedRegistry,
    execute_seed,
    resolve_seed,
    run_seeds,
)
from tests._support import ACCOUNTS_MIGRATIONS, BILLING_MIGRATIONS, fetch_all


def _write_sql_seed(store, sql: str) -> None:
    store.seeds_path.mkdir(parents=True, exist_ok=True)
    (store.seeds_path / "seed.sql").write_text(sql, encoding="utf-8")


def _write_script_seed(store, body: str, *, executable: bool = True) -> None:
    store.seeds_path.mkdir(parents=True, exist_ok=True)
    path = store.seeds_path / "seed"
    path.write_text("#!/bin/sh\n" + textwrap.dedent(body), encoding="utf-8")
    if executable:
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


@pytest.fixture()
def migrated(two_stores):
    """Both stores connected and fully migrated."""
    connected = connect_stores(two_stores)
    run_migrations(connected)
    yield connected
    close_stores(connected)


class TestSeedRegistry:
    def test_register_directly_and_as_decorator(self):
        seeds = SeedRegistry()

        def seed_billing(conn, store):
            pass

        seeds.register("billing", seed_billing)

        @seeds.register("accounts")
        def seed_accounts(conn, store):
            pass

        assert seeds.get("billing") is seed_billing
        assert seeds.get("accounts") is seed_accounts
        assert "billing" in seeds
        assert len(seeds) == 2
        assert seeds.get("audit") is None

    def test_duplicate_registration_rejected(self):
        seeds = SeedRegistry({"billing": lambda conn, store: None})
        with pytest.raises(ValueError, match="already registered"):
            seeds.register("billing", lambda conn, store: None)


class TestResolveSeed:
    def test_no_seed(self, make_store):
        assert resolve_seed(make_store("billing")) is None

    def test_function_wins_over_files(self, make_store):
        store = make_store("billing")
        _write_sql_seed(store, "SELECT 1;")
        seeds = SeedRegistry({"billing": lambda conn, s: None})
        asset = resolve_seed(store, seeds)
        assert asset.kind is SeedKind.FUNCTION
        assert asset.path is None

    def test_sql_wins_over_script(self, make_store):
        store = make_store("billing")
        _write_sql_seed(store, "SELECT 1;")
        _write_script_seed(store, "exit 0\n")
        asset = resolve_seed(store)
        assert asset.kind is SeedKind.SQL
        assert asset.path == store.seeds_path / "seed.sql"

    def test_executable_script(self, make_store):
        store = make_store("billing")
        _write_script_seed(store, "exit 0\n")
        asset = resolve_seed(store)
        assert asset.kind is SeedKind.EXECUTABLE
        assert asset.label == str(store.seeds_path / "seed")

    def test_non_executable_script_rejected(self, make_store):
        store = make_store("billing")
        _write_script_seed(store, "exit 0\n", executable=False)
        with pytest.raises(SeedError, match="not executable") as info:
            resolve_seed(store)
        assert info.value.store == "billing"


class TestExecuteSeed:
    def test_sql_seed_runs_in_one_transaction(self, make_store, write_migrations):
        store = make_store("billing")
        write_migrations(store, BILLING_MIGRATIONS)
        _write_sql_seed(
            store,
            "INSERT INTO invoices (id, total) VALUES (1, 100);\n"
            "INSERT INTO invoices (id, total) VALUES (1, 200);\n",
        )
        entry = connect_store(store)
        try:
            run_migrations([entry])
            with pytest.raises(SeedError) as info:
                execute_seed(entry, resolve_seed(store))
        finally:
            entry.close()
        assert info.value.store == "billing"
        assert info.value.context.path == str(store.seeds_path / "seed.sql")
        assert fetch_all(store, "SELECT id FROM invoices") == []

    def test_function_receives_connection_and_store(self, make_store, write_migrations):
        store = make_store("billing")
        write_migrations(store, BILLING_MIGRATIONS)
        seen = []

        def seed(conn, cfg):
            seen.append(cfg.name)
            conn.exec_driver_sql("INSERT INTO invoices (id, total) VALUES (7, 70)")

        entry = connect_store(store)
        try:
            run_migrations([entry])
            execute_seed(entry, resolve_seed(store, SeedRegistry({"billing": seed})))
        finally:
            entry.close()
        assert seen == ["billing"]
        assert fetch_all(store, "SELECT id, total FROM invoices") == [(7, 70)]

    def test_script_gets_store_environment(self, make_store):
        store = make_store("billing")
        _write_script_seed(
            store,
            """\
            printf '%s|%s|%s' "$RELEASE_STORE" "$RELEASE_DATABASE_URL" "$(pwd -P)" > "$RELEASE_PRIV_ROOT/marker"
            """,
        )
        entry = connect_store(store)
        try:
            execute_seed(entry, resolve_seed(store))
        finally:
            entry.close()
        name, url, cwd = (store.priv_root / "marker").read_text().split("|")
        assert name == "billing"
        assert url == store.url
        assert cwd == str(store.asset_root.resolve())

    def test_script_failure_reports_status(self, make_store):
        store = make_store("billing")
        _write_script_seed(store, "echo 'plans table missing' >&2\nexit 3\n")
        entry = connect_store(store)
        try:
            with pytest.raises(SeedError, match="status 3") as info:
                execute_seed(entry, resolve_seed(store))
        finally:
            entry.close()
        assert "plans table missing" in info.value.message
        assert info.value.context.metadata["returncode"] == 3

    def test_script_timeout(self, make_store):
        store = make_store("billing")
        _write_script_seed(store, "exec sleep 5\n")
        entry = connect_store(store)
        try:
            with pytest.raises(SeedError, match="did not finish"):
                execute_seed(entry, resolve_seed(store), timeout=0.2)
        finally:
            entry.close()


class TestRunSeeds:
    def test_stores_without_seeds_are_skipped(self, migrated, two_stores):
        accounts = two_stores.store("accounts")
        _write_sql_seed(accounts, "INSERT INTO accounts (id, email) VALUES (2, 'ops@example.com');")
        assert run_seeds(migrated) == ["accounts"]
        assert fetch_all(accounts, "SELECT id FROM accounts ORDER BY id") == [(1,), (2,)]

    def test_seeds_run_in_store_order(self, migrated):
        order = []
        seeds = SeedRegistry(
            {
                "accounts": lambda conn, store: order.append(store.name),
                "billing": lambda conn, store: order.append(store.name),
            }
        )
        assert run_seeds(migrated, registry=seeds) == ["billing", "accounts"]
        assert order == ["billing", "accounts"]

    def test_first_failure_stops_seeding_and_keeps_earlier_data(self, make_store, write_migrations):
        billing = make_store("billing")
        accounts = make_store("accounts")
        audit = make_store("audit")
        write_migrations(billing, BILLING_MIGRATIONS)
        write_migrations(accounts, ACCOUNTS_MIGRATIONS)
        _write_sql_seed(billing, "INSERT INTO invoices (id, total) VALUES (1, 10);")
        # duplicate email violates the UNIQUE constraint from migration 1
        _write_sql_seed(accounts, "INSERT INTO accounts (id, email) VALUES (5, 'admin@example.com');")
        ran = []
        seeds = SeedRegistry({"audit": lambda conn, store: ran.append(store.name)})

        connected = connect_stores(ReleaseConfig(stores=[billing, accounts, audit]))
        try:
            run_migrations(connected)
            with pytest.raises(SeedError) as info:
                run_seeds(connected, registry=seeds)
        finally:
            close_stores(connected)

        assert info.value.store == "accounts"
        assert ran == []
        assert fetch_all(billing, "SELECT id FROM invoices") == [(1,)]
