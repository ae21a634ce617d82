"""Unit tests for the server authority.

Tests account creation, login, push/pull semantics and device
management against a real SQLite database.
"""

from __future__ import annotations

import threading
from typing import Iterator, List

import pytest

from casilisto.core.authority import MAX_CODE_ATTEMPTS, SyncAuthority, generate_code
from casilisto.core.database import Database
from casilisto.core.errors import AccountCreationFailed, DeviceLimitExceeded, NotFoundError
from casilisto.core.registry import DeviceRegistry
from casilisto.core.validation import CODE_ALPHABET, CODE_LENGTH, ValidationError
from tests.helpers import DEVICE_A, DEVICE_B, device_ids, make_item, make_payload

pytestmark = pytest.mark.unit


class TestGenerateCode:
    """Test account code generation."""

    def test_code_shape(self) -> None:
        for _ in range(50):
            code = generate_code()
            assert len(code) == CODE_LENGTH
            assert all(c in CODE_ALPHABET for c in code)

    def test_alphabet_excludes_ambiguous_characters(self) -> None:
        for c in "IO01":
            assert c not in CODE_ALPHABET


class TestCreateAccount:
    """Test account creation."""

    def test_creates_empty_account(self, authority: SyncAuthority, test_db: Database) -> None:
        code = authority.create_account()

        assert test_db.account_exists(code)
        state = test_db.get_sync_state(code)
        assert state is not None
        assert state.items == []
        assert state.updated_at > 0

    def test_codes_are_unique(self, authority: SyncAuthority) -> None:
        codes = {authority.create_account() for _ in range(25)}
        assert len(codes) == 25

    def test_retries_on_collision(self, test_db: Database) -> None:
        """A colliding code is never returned; the next candidate is used."""
        test_db.create_account("AAAAAA")
        candidates: Iterator[str] = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
        authority = SyncAuthority(test_db, code_generator=lambda: next(candidates))

        assert authority.create_account() == "BBBBBB"
        assert test_db.count_accounts() == 2

    def test_fails_after_max_attempts(self, test_db: Database) -> None:
        test_db.create_account("AAAAAA")
        attempts: List[int] = []

        def always_taken() -> str:
            attempts.append(1)
            return "AAAAAA"

        authority = SyncAuthority(test_db, code_generator=always_taken)

        with pytest.raises(AccountCreationFailed):
            authority.create_account()
        assert len(attempts) == MAX_CODE_ATTEMPTS
        assert test_db.count_accounts() == 1


class TestLogin:
    """Test linking devices."""

    def test_login_returns_dataset_and_registers_device(
        self, authority: SyncAuthority, account_code: str
    ) -> None:
        data = authority.login(account_code, DEVICE_A, "Kitchen tablet")

        assert data.items == []
        devices = authority.list_devices(account_code)
        assert [d.id for d in devices] == [DEVICE_A]
        assert devices[0].name == "Kitchen tablet"

    def test_code_is_normalized(self, authority: SyncAuthority, account_code: str) -> None:
        authority.login(f"  {account_code.lower()} ", DEVICE_A, "Phone")
        assert len(authority.list_devices(account_code)) == 1

    def test_unknown_code(self, authority: SyncAuthority) -> None:
        with pytest.raises(NotFoundError):
            authority.login("ZZZZZZ", DEVICE_A, "Phone")

    def test_account_without_sync_state(
        self, authority: SyncAuthority, test_db: Database, account_code: str
    ) -> None:
        with test_db.transaction() as conn:
            conn.execute("DELETE FROM sync_state WHERE account_code = ?", (account_code,))

        with pytest.raises(NotFoundError):
            authority.login(account_code, DEVICE_A, "Phone")
        with pytest.raises(NotFoundError):
            authority.push(account_code, DEVICE_A, "Phone", make_payload())
        with pytest.raises(NotFoundError):
            authority.pull(account_code, DEVICE_A, "Phone", since=0)

    def test_missing_device_id(self, authority: SyncAuthority, account_code: str) -> None:
        with pytest.raises(ValidationError):
            authority.login(account_code, "", "Phone")

    def test_default_device_name(self, authority: SyncAuthority, account_code: str) -> None:
        authority.login(account_code, DEVICE_A, None)
        assert authority.list_devices(account_code)[0].name == "Unknown device"

    def test_device_limit(self, authority: SyncAuthority, account_code: str) -> None:
        """The 11th distinct device is rejected, known devices never are."""
        ids = device_ids(10)
        for device_id in ids:
            authority.login(account_code, device_id, "Device")

        with pytest.raises(DeviceLimitExceeded):
            authority.login(account_code, DEVICE_B, "One too many")

        authority.login(account_code, ids[2], "Device 3 again")
        assert len(authority.list_devices(account_code)) == 10


class TestPush:
    """Test push merge semantics."""

    def test_first_push_replaces_empty_state(
        self, authority: SyncAuthority, account_code: str
    ) -> None:
        payload = make_payload(items=[make_item("a", "Milk")], baco_mode=True)

        result = authority.push(account_code, DEVICE_A, "Phone", payload, 123)

        assert result.merged is False
        assert result.merged_data is None
        state = authority.db.get_sync_state(account_code)
        assert state.items == [make_item("a", "Milk")]
        assert state.baco_mode is True
        assert state.updated_at == result.server_updated_at

    def test_push_merges_with_existing_state(
        self, authority: SyncAuthority, account_code: str
    ) -> None:
        """Device B's edit of a shared item wins and its new item is added."""
        authority.push(account_code, DEVICE_A, "A", make_payload(items=[{"id": "a", "text": "Milk"}]))

        result = authority.push(
            account_code,
            DEVICE_B,
            "B",
            make_payload(items=[{"id": "a", "text": "Milk (2%)"}, {"id": "b", "text": "Eggs"}]),
        )

        assert result.merged is True
        assert result.merged_data.items == [
            {"id": "a", "text": "Milk (2%)"},
            {"id": "b", "text": "Eggs"},
        ]
        assert authority.db.get_sync_state(account_code).items == result.merged_data.items

    def test_empty_push_never_empties_server(
        self, authority: SyncAuthority, account_code: str
    ) -> None:
        authority.push(
            account_code,
            DEVICE_A,
            "A",
            make_payload(items=[make_item("a", "Milk"), make_item("b", "Bread")]),
        )

        result = authority.push(account_code, DEVICE_B, "B", make_payload())

        assert result.merged is True
        assert len(authority.db.get_sync_state(account_code).items) == 2

    def test_client_timestamp_is_not_trusted(
        self, authority: SyncAuthority, account_code: str
    ) -> None:
        """An old localUpdatedAt does not discard the push."""
        authority.push(account_code, DEVICE_A, "A", make_payload(items=[make_item("a", "Milk")]))

        authority.push(
            account_code, DEVICE_B, "B", make_payload(items=[make_item("b", "Eggs")]), client_timestamp=1
        )

        ids = [i["id"] for i in authority.db.get_sync_state(account_code).items]
        assert ids == ["a", "b"]

    def test_timestamps_are_strictly_increasing(
        self, authority: SyncAuthority, account_code: str
    ) -> None:
        stamps = [
            authority.push(
                account_code, DEVICE_A, "A", make_payload(items=[make_item(str(n), "x")])
            ).server_updated_at
            for n in range(5)
        ]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 5

    def test_push_registers_device(self, authority: SyncAuthority, account_code: str) -> None:
        authority.push(account_code, DEVICE_A, None, make_payload())
        devices = authority.list_devices(account_code)
        assert [d.name for d in devices] == ["Device"]

    def test_push_respects_device_limit(
        self, authority: SyncAuthority, account_code: str
    ) -> None:
        for device_id in device_ids(10):
            authority.login(account_code, device_id, "Device")

        with pytest.raises(DeviceLimitExceeded):
            authority.push(account_code, DEVICE_B, "B", make_payload(items=[make_item("a", "Milk")]))
        assert authority.db.get_sync_state(account_code).items == []

    def test_push_unknown_code(self, authority: SyncAuthority) -> None:
        with pytest.raises(NotFoundError):
            authority.push("ZZZZZZ", DEVICE_A, "A", make_payload())

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            "not a dict",
            {"items": "not a list"},
            {"categories": []},
            {"favorites": [{"category": "no text"}]},
            {"bacoMode": "yes"},
        ],
    )
    def test_push_rejects_malformed_payload(
        self, authority: SyncAuthority, account_code: str, payload
    ) -> None:
        with pytest.raises(ValidationError):
            authority.push(account_code, DEVICE_A, "A", payload)

    def test_concurrent_pushes_both_survive(self, test_config_dir) -> None:
        """Simultaneous pushes from two devices never lose either side."""
        db = Database(test_config_dir / "concurrent.db")
        authority = SyncAuthority(db, DeviceRegistry(db))
        code = authority.create_account()
        authority.push(code, DEVICE_A, "A", make_payload(items=[make_item("seed", "Seed")]))

        barrier = threading.Barrier(2)
        errors: List[BaseException] = []

        def push_from(device_id: str, prefix: str) -> None:
            try:
                barrier.wait()
                for n in range(10):
                    authority.push(
                        code, device_id, prefix, make_payload(items=[make_item(f"{prefix}{n}", prefix)])
                    )
            except BaseException as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [
            threading.Thread(target=push_from, args=(DEVICE_A, "a")),
            threading.Thread(target=push_from, args=(DEVICE_B, "b")),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        db.close()

        assert errors == []
        db = Database(test_config_dir / "concurrent.db")
        ids = {i["id"] for i in db.get_sync_state(code).items}
        db.close()
        assert ids == {"seed"} | {f"a{n}" for n in range(10)} | {f"b{n}" for n in range(10)}


class TestPull:
    """Test pull change detection."""

    def test_pull_since_zero_has_changes(
        self, authority: SyncAuthority, account_code: str
    ) -> None:
        result = authority.pull(account_code, DEVICE_A, "A", since=0)
        assert result.has_changes is True
        assert result.data is not None

    def test_pull_at_known_timestamp(self, authority: SyncAuthority, test_db: Database) -> None:
        """Account updated at T=1000: since=0 changes, since=1000 none."""
        test_db.create_account("ABCDEF")
        state = test_db.get_sync_state("ABCDEF")
        state.items = [make_item("a", "Milk")]
        test_db.save_sync_state("ABCDEF", state, 1000)

        first = authority.pull("ABCDEF", DEVICE_A, "A", since=0)
        second = authority.pull("ABCDEF", DEVICE_A, "A", since=1000)

        assert first.has_changes is True
        assert first.server_updated_at == 1000
        assert first.data.items == [make_item("a", "Milk")]
        assert second.has_changes is False
        assert second.server_updated_at == 1000
        assert second.data is None

    def test_pull_is_idempotent(self, authority: SyncAuthority, account_code: str) -> None:
        authority.push(account_code, DEVICE_A, "A", make_payload(items=[make_item("a", "Milk")]))
        first = authority.pull(account_code, DEVICE_B, "B", since=0)

        second = authority.pull(account_code, DEVICE_B, "B", since=first.server_updated_at)
        third = authority.pull(account_code, DEVICE_B, "B", since=first.server_updated_at)

        assert second.has_changes is False
        assert third.has_changes is False

    def test_pull_after_push_has_changes(
        self, authority: SyncAuthority, account_code: str
    ) -> None:
        since = authority.pull(account_code, DEVICE_B, "B").server_updated_at
        authority.push(account_code, DEVICE_A, "A", make_payload(items=[make_item("a", "Milk")]))

        result = authority.pull(account_code, DEVICE_B, "B", since=since)

        assert result.has_changes is True
        assert result.data.items == [make_item("a", "Milk")]

    def test_pull_unknown_code(self, authority: SyncAuthority) -> None:
        with pytest.raises(NotFoundError):
            authority.pull("ZZZZZZ", DEVICE_A, "A")


class TestDevices:
    """Test listing and unlinking devices."""

    def test_unlink_third_of_three_frees_slot(
        self, authority: SyncAuthority, account_code: str
    ) -> None:
        ids = device_ids(3)
        for device_id in ids:
            authority.login(account_code, device_id, "Device")

        assert authority.unlink_device(account_code, ids[2]) is True

        remaining = authority.list_devices(account_code)
        assert len(remaining) == 2
        assert ids[2] not in {d.id for d in remaining}
        assert authority.registry.count(account_code) == 2

    def test_unlink_unknown_device(self, authority: SyncAuthority, account_code: str) -> None:
        assert authority.unlink_device(account_code, DEVICE_A) is False

    def test_list_devices_unknown_code(self, authority: SyncAuthority) -> None:
        with pytest.raises(NotFoundError):
            authority.list_devices("ZZZZZZ")
