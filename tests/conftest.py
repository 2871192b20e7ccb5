from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from pending_accounts_report import ReportConfig, VaultConnectionError


class FakeBackend:
    """In-memory vault: pending file name -> categories."""

    def __init__(
        self,
        entries: Dict[str, List[Tuple[str, str]]],
        fail_on: Iterable[str] = (),
        reject_logon: bool = False,
        fail_disconnect: bool = False,
    ) -> None:
        self.entries = entries
        self.fail_on = set(fail_on)
        self.reject_logon = reject_logon
        self.fail_disconnect = fail_disconnect
        self.connects: List[Tuple[Optional[str], str, str, bool]] = []
        self.disconnects = 0
        self.list_calls = 0
        self.fetched: List[str] = []

    def connect(self, address, username, credential_source, auto_change_password):
        self.connects.append((address, username, credential_source, auto_change_password))
        if self.reject_logon:
            raise VaultConnectionError("ITATS004E Authentication failure")
        return {"user": username}

    def disconnect(self, session) -> None:
        self.disconnects += 1
        if self.fail_disconnect:
            raise RuntimeError("PACLI LOGOFF failed")

    def list_entries(self, session, safe, folder) -> List[str]:
        self.list_calls += 1
        return list(self.entries)

    def get_attributes(self, session, safe, folder, identifier) -> List[Tuple[str, str]]:
        self.fetched.append(identifier)
        if identifier in self.fail_on:
            raise RuntimeError(f"ITATS030E File {identifier} is locked")
        return list(self.entries[identifier])


class CollectingReporter:
    def __init__(self) -> None:
        self.projections = []

    def emit(self, projection) -> None:
        self.projections.append(projection)


SAMPLE_ENTRIES: Dict[str, List[Tuple[str, str]]] = {
    "svcA": [("UserName", "admin"), ("Address", "corp.local"), ("Dependencies", "db1"), ("PolicyID", "WinDomain")],
    "CPM_rotation_state.txt": [("Internal", "yes")],
    "svcB": [("PolicyID", "WinService"), ("MasterPassName", "svcA"), ("DeviceType", "Application")],
    "oracle-app": [("UserName", "app"), ("Address", "ora1"), ("PolicyID", "Oracle"), ("Port", "1521")],
    "svcC": [("MasterPassName", "retired-master"), ("PolicyID", "WinTask"), ("RetriesCount", "3")],
    "svcD": [("MasterPassName", "oracle-app"), ("Address", "app-host"), ("ExtraPass1Name", "logon")],
}


@pytest.fixture
def sample_entries() -> Dict[str, List[Tuple[str, str]]]:
    return {name: list(pairs) for name, pairs in SAMPLE_ENTRIES.items()}


@pytest.fixture
def config(tmp_path: Path) -> ReportConfig:
    credential_file = tmp_path / "reporter.cred"
    credential_file.write_text("cred", encoding="utf-8")
    return ReportConfig(
        vault_address="10.0.0.5",
        username="ReportUser",
        credential_file=credential_file,
        output_path=tmp_path / "out" / "pending_accounts.csv",
        checkpoint_path=tmp_path / "pending_accounts_inprogress.csv",
    )


@pytest.fixture
def reporter() -> CollectingReporter:
    return CollectingReporter()


@pytest.fixture
def make_backend():
    return FakeBackend
