#!/usr/bin/env python3
"""CSV report of the accounts waiting in a CyberArk pending safe."""

from __future__ import annotations

import argparse
import csv
import json
import logging
import subprocess
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from getpass import getpass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Literal, Optional, Protocol, Sequence, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ark_sdk_python.auth import ArkISPAuth
from ark_sdk_python.common import ArkSystemConfig
from ark_sdk_python.models import ArkAuthException, ArkServiceException
from ark_sdk_python.models.auth import ArkAuthMethod, ArkAuthProfile, ArkSecret, IdentityArkAuthMethodSettings
from ark_sdk_python.models.services.pcloud.accounts import ArkPCloudAccountsFilter
from ark_sdk_python.services.pcloud import ArkPCloudAPI

LOGGER = logging.getLogger("pending_accounts_report")
SUPPORTED_MFA_METHODS: List[str] = ["pf", "sms", "email", "otp", "oath", "auto"]

IDENTIFIER_COLUMN = "FileName"
MASTER_COLUMN = "MasterPassName"
PROCESSED_COLUMN = "Processed"
RESERVED_COLUMNS = frozenset({IDENTIFIER_COLUMN, PROCESSED_COLUMN})

DEFAULT_FIRST_COLUMNS: List[str] = [IDENTIFIER_COLUMN, "UserName", "Address", "PolicyID", "DeviceType"]
DEFAULT_EXCLUDE_COLUMNS: List[str] = [MASTER_COLUMN, PROCESSED_COLUMN, "RetriesCount", "LastTask", "LastFailDate"]
DEFAULT_INHERITED_ATTRIBUTES: List[str] = ["UserName", "Address", "Dependencies"]

# Account fields surfaced by the Privilege Cloud backend, in report order.
PCLOUD_ACCOUNT_FIELDS: List[Tuple[str, str]] = [
    ("user_name", "UserName"),
    ("address", "Address"),
    ("platform_id", "PolicyID"),
    ("safe_name", "Safe"),
]


class ReportError(Exception):
    """Base class for failures while building the pending accounts report."""


class VaultConnectionError(ReportError, ConnectionError):
    """The vault is unreachable or rejected the logon."""


class EnrichmentError(ReportError):
    def __init__(self, identifier: str, cause: BaseException) -> None:
        super().__init__(f"Failed to fetch categories for '{identifier}': {cause}")
        self.identifier = identifier
        self.cause = cause


class TeardownError(ReportError):
    """Disconnecting from the vault did not complete cleanly."""


class PacliError(ReportError):
    def __init__(self, command: str, returncode: int, output: str) -> None:
        super().__init__(f"PACLI {command} exited with code {returncode}: {output or 'no output'}")
        self.command = command
        self.returncode = returncode
        self.output = output


def strip_value(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    return text or None


def parse_bool(value: Optional[str]) -> Optional[bool]:
    text = strip_value(value)
    if text is None:
        return None
    truthy = {"true", "yes", "y", "1"}
    falsy = {"false", "no", "n", "0"}
    lowered = text.lower()
    if lowered in truthy:
        return True
    if lowered in falsy:
        return False
    raise ValueError(f"Unable to parse boolean value '{value}'")


def parse_list(value: Optional[str]) -> List[str]:
    text = strip_value(value)
    if not text:
        return []
    normalized = text.replace(";", ",")
    return [item.strip() for item in normalized.split(",") if item and item.strip()]


def dedupe(names: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    ordered: List[str] = []
    for name in names:
        if name not in seen:
            seen.add(name)
            ordered.append(name)
    return ordered


class IdentitySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    mfa_method: str = Field(default="pf", description="Identity MFA method, or 'auto' for the profile default")
    interactive_mfa: bool = True
    identity_url: Optional[str] = None
    tenant_subdomain: Optional[str] = None
    identity_application: str = "__idaptive_cybr_user_oidc"
    force_login: bool = False

    @field_validator("mfa_method")
    @classmethod
    def _validate_mfa_method(cls, value: str) -> str:
        lowered = value.strip().lower()
        if lowered not in SUPPORTED_MFA_METHODS:
            raise ValueError(f"mfa_method must be one of {', '.join(SUPPORTED_MFA_METHODS)}")
        return lowered


class ReportConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    backend: Literal["pacli", "pcloud"] = "pacli"
    vault_name: str = Field(default="Vault", description="Name PACLI uses for the vault definition")
    vault_address: Optional[str] = None
    username: Optional[str] = None
    credential_file: Optional[Path] = Field(default=None, description="PACLI credential file used for LOGON")
    pacli_path: Path = Path("PACLI.exe")
    allow_self_signed_certificates: bool = False
    auto_change_password: bool = Field(
        default=False,
        description="Let the vault rotate the credential file on logon. The previous secret stops working.",
    )
    pending_safe: str = "PasswordManager_Pending"
    folder: str = "Root"
    output_path: Path = Path("pending_accounts.csv")
    checkpoint_path: Path = Path("pending_accounts_inprogress.csv")
    first_columns: List[str] = Field(default_factory=lambda: list(DEFAULT_FIRST_COLUMNS))
    exclude_columns: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_COLUMNS))
    inherited_attributes: List[str] = Field(default_factory=lambda: list(DEFAULT_INHERITED_ATTRIBUTES))
    internal_file_suffix: str = ".txt"
    identity: IdentitySettings = Field(default_factory=IdentitySettings)

    @field_validator("first_columns", "exclude_columns", "inherited_attributes")
    @classmethod
    def _dedupe_columns(cls, value: List[str]) -> List[str]:
        return dedupe(name.strip() for name in value if name and name.strip())

    @model_validator(mode="after")
    def _validate_backend_requirements(self) -> "ReportConfig":
        if self.backend == "pacli":
            missing = [
                name
                for name, value in (
                    ("vault_address", self.vault_address),
                    ("username", self.username),
                    ("credential_file", self.credential_file),
                )
                if not value
            ]
            if missing:
                raise ValueError(f"The PACLI backend requires: {', '.join(missing)}")
        elif not self.username:
            raise ValueError("The Privilege Cloud backend requires a username.")
        return self


@dataclass
class AccountRecord:
    identifier: str
    attributes: Dict[str, str] = field(default_factory=dict)
    processed: bool = False

    @property
    def master_pass_name(self) -> Optional[str]:
        return strip_value(self.attributes.get(MASTER_COLUMN))

    def merge(self, pairs: Iterable[Tuple[str, Optional[str]]], replace: bool = False) -> None:
        merged = {} if replace else dict(self.attributes)
        for name, value in pairs:
            if value is None or value == "":
                continue
            if name in RESERVED_COLUMNS:
                LOGGER.warning("Ignoring category '%s' on '%s': the name is reserved", name, self.identifier)
                continue
            merged[name] = value
        self.attributes = merged

    def as_row(self) -> Dict[str, str]:
        row = {IDENTIFIER_COLUMN: self.identifier}
        row.update((key, value) for key, value in self.attributes.items() if key not in RESERVED_COLUMNS)
        return row


@dataclass
class EnrichmentResult:
    record: AccountRecord
    error: Optional[EnrichmentError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Projection:
    columns: List[str]
    rows: List[Dict[str, str]]


class VaultBackend(Protocol):
    def connect(self, address: Optional[str], username: str, credential_source: str, auto_change_password: bool) -> Any:
        ...

    def disconnect(self, session: Any) -> None:
        ...

    def list_entries(self, session: Any, safe: str, folder: str) -> List[str]:
        ...

    def get_attributes(self, session: Any, safe: str, folder: str, identifier: str) -> List[Tuple[str, str]]:
        ...


class Reporter(Protocol):
    def emit(self, projection: Projection) -> None:
        ...


@dataclass
class PacliSession:
    vault: str
    user: str
    open_safes: List[str] = field(default_factory=list)


class PacliBackend:
    """Runs the PACLI executable once per command.

    PACLI keeps its own state between invocations after INIT, so every command
    only needs the vault and user names defined at logon.
    """

    def __init__(
        self,
        pacli_path: Path,
        vault_name: str,
        allow_self_signed_certificates: bool = False,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.pacli_path = pacli_path
        self.vault_name = vault_name
        self.allow_self_signed_certificates = allow_self_signed_certificates
        self._runner = runner

    def _run(self, command: str, output: Sequence[str] = (), **params: Any) -> List[List[str]]:
        args = [str(self.pacli_path), command]
        for key, value in params.items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = "YES" if value else "NO"
            args.append(f"{key.upper()}={value}")
        if output:
            args.append(f"OUTPUT({','.join(['ENCLOSE', *output])})")
        LOGGER.debug("Running PACLI %s", command)
        completed = self._runner(args, capture_output=True, text=True, check=False)
        if completed.returncode != 0:
            detail = strip_value(completed.stderr) or strip_value(completed.stdout) or ""
            raise PacliError(command, completed.returncode, detail)
        lines = [line for line in (completed.stdout or "").splitlines() if line.strip()]
        return [row for row in csv.reader(lines)]

    def connect(self, address: Optional[str], username: str, credential_source: str, auto_change_password: bool) -> PacliSession:
        try:
            self._run("INIT")
            self._run(
                "DEFINE",
                vault=self.vault_name,
                address=address,
                trustssc=True if self.allow_self_signed_certificates else None,
            )
            self._run(
                "LOGON",
                vault=self.vault_name,
                user=username,
                logonfile=credential_source,
                autochangepassword=auto_change_password,
            )
        except (PacliError, OSError) as exc:
            self._terminate_quietly()
            raise VaultConnectionError(
                f"Unable to log on to vault '{self.vault_name}' at {address} as {username}: {exc}"
            ) from exc
        return PacliSession(vault=self.vault_name, user=username)

    def _terminate_quietly(self) -> None:
        try:
            self._run("TERM")
        except (PacliError, OSError) as exc:
            LOGGER.debug("PACLI TERM after failed logon also failed: %s", exc)

    def _ensure_safe_open(self, session: PacliSession, safe: str) -> None:
        if safe in session.open_safes:
            return
        self._run("OPENSAFE", vault=session.vault, user=session.user, safe=safe)
        session.open_safes.append(safe)

    def list_entries(self, session: PacliSession, safe: str, folder: str) -> List[str]:
        self._ensure_safe_open(session, safe)
        rows = self._run("FILESLIST", output=["NAME"], vault=session.vault, user=session.user, safe=safe, folder=folder)
        return [row[0] for row in rows if row and row[0]]

    def get_attributes(self, session: PacliSession, safe: str, folder: str, identifier: str) -> List[Tuple[str, str]]:
        self._ensure_safe_open(session, safe)
        rows = self._run(
            "LISTFILECATEGORIES",
            output=["CATEGORYNAME", "CATEGORYVALUE"],
            vault=session.vault,
            user=session.user,
            safe=safe,
            folder=folder,
            file=identifier,
        )
        pairs: List[Tuple[str, str]] = []
        for row in rows:
            if len(row) < 2 or not row[0]:
                continue
            pairs.append((row[0], row[1]))
        return pairs

    def disconnect(self, session: PacliSession) -> None:
        failures: List[str] = []
        for safe in list(session.open_safes):
            try:
                self._run("CLOSESAFE", vault=session.vault, user=session.user, safe=safe)
            except (PacliError, OSError) as exc:
                failures.append(str(exc))
        session.open_safes.clear()
        for command, params in (("LOGOFF", {"vault": session.vault, "user": session.user}), ("TERM", {})):
            try:
                self._run(command, **params)
            except (PacliError, OSError) as exc:
                failures.append(str(exc))
        if failures:
            raise TeardownError("; ".join(failures))


@dataclass
class PCloudSession:
    api: Any
    accounts: Dict[Tuple[str, str], Any] = field(default_factory=dict)


class PCloudBackend:
    """Reads pending accounts from Privilege Cloud through the ark SDK."""

    def __init__(
        self,
        identity: IdentitySettings,
        allow_self_signed_certificates: bool = False,
        auth_factory: Callable[[], Any] = ArkISPAuth,
        api_factory: Callable[[Any], Any] = ArkPCloudAPI,
    ) -> None:
        self.identity = identity
        self.allow_self_signed_certificates = allow_self_signed_certificates
        self._auth_factory = auth_factory
        self._api_factory = api_factory

    def connect(self, address: Optional[str], username: str, credential_source: str, auto_change_password: bool) -> PCloudSession:
        if self.allow_self_signed_certificates:
            ArkSystemConfig.disable_certificate_verification()
        if auto_change_password:
            LOGGER.warning("Automatic password change is not available for Identity logons; ignoring the option.")
        method = self.identity.mfa_method
        method_settings = IdentityArkAuthMethodSettings(
            identity_mfa_method="" if method == "auto" else method,
            identity_mfa_interactive=self.identity.interactive_mfa,
            identity_url=address or self.identity.identity_url,
            identity_tenant_subdomain=self.identity.tenant_subdomain,
            identity_application=self.identity.identity_application,
        )
        profile = ArkAuthProfile(username=username, auth_method=ArkAuthMethod.Identity, auth_method_settings=method_settings)
        auth = self._auth_factory()
        LOGGER.info("Authenticating to Identity as %s", username)
        try:
            auth.authenticate(
                auth_profile=profile,
                secret=ArkSecret(secret=credential_source),
                force=self.identity.force_login,
                refresh_auth=True,
            )
        except ArkAuthException as exc:
            raise VaultConnectionError(f"Identity authentication failed for {username}: {exc}") from exc
        return PCloudSession(api=self._api_factory(auth))

    def list_entries(self, session: PCloudSession, safe: str, folder: str) -> List[str]:
        names: List[str] = []
        for page in session.api.accounts.list_accounts_by(ArkPCloudAccountsFilter(safe_name=safe)):
            for account in getattr(page, "items", []):
                name = getattr(account, "name", None)
                if not name:
                    continue
                session.accounts[(safe, name)] = account
                names.append(name)
        return names

    def get_attributes(self, session: PCloudSession, safe: str, folder: str, identifier: str) -> List[Tuple[str, str]]:
        account = session.accounts.get((safe, identifier))
        if account is None:
            # Resumed runs skip enumeration, so the cache starts empty.
            self.list_entries(session, safe, folder)
            account = session.accounts.get((safe, identifier))
        if account is None:
            raise ReportError(f"Account '{identifier}' is no longer in safe '{safe}'")
        pairs: List[Tuple[str, str]] = []
        for attribute, column in PCLOUD_ACCOUNT_FIELDS:
            value = getattr(account, attribute, None)
            if value:
                pairs.append((column, str(value)))
        properties = getattr(account, "platform_account_properties", None) or {}
        for key, value in properties.items():
            if value is not None:
                pairs.append((key, str(value)))
        return pairs

    def disconnect(self, session: PCloudSession) -> None:
        session.accounts.clear()


def write_records(path: Path, records: Sequence[AccountRecord]) -> None:
    columns = dedupe([IDENTIFIER_COLUMN, *(key for record in records for key in record.as_row())])
    if MASTER_COLUMN not in columns:
        columns.append(MASTER_COLUMN)
    columns.append(PROCESSED_COLUMN)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=columns)
        writer.writeheader()
        for record in records:
            row = record.as_row()
            row[PROCESSED_COLUMN] = str(record.processed)
            writer.writerow(row)


def read_records(path: Path) -> List[AccountRecord]:
    records: List[AccountRecord] = []
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        if not reader.fieldnames or IDENTIFIER_COLUMN not in reader.fieldnames:
            raise ValueError(f"Checkpoint file '{path}' must include a '{IDENTIFIER_COLUMN}' header column.")
        for index, row in enumerate(reader, start=2):
            identifier = row.get(IDENTIFIER_COLUMN) or ""
            if not identifier.strip():
                raise ValueError(f"Row {index}: column '{IDENTIFIER_COLUMN}' is required in checkpoint '{path}'")
            try:
                processed = bool(parse_bool(row.get(PROCESSED_COLUMN)))
            except ValueError as exc:
                raise ValueError(f"Row {index}: {exc}") from exc
            attributes = {
                key: value
                for key, value in row.items()
                if key is not None and key not in (IDENTIFIER_COLUMN, PROCESSED_COLUMN) and value
            }
            records.append(AccountRecord(identifier=identifier, attributes=attributes, processed=processed))
    return records


class CheckpointStore:
    """Pending work of an interrupted run.

    ``path`` holds the records still to be enriched. Records finished before
    the interruption go to a ``_completed`` sidecar so the resumed run can
    still report them.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.completed_path = path.with_name(f"{path.stem}_completed{path.suffix}")

    def load(self) -> Optional[List[AccountRecord]]:
        if not self.path.exists():
            return None
        records: List[AccountRecord] = []
        if self.completed_path.exists():
            records.extend(read_records(self.completed_path))
        done = {record.identifier for record in records}
        records.extend(record for record in read_records(self.path) if record.identifier not in done)
        return records

    def save(self, records: Sequence[AccountRecord]) -> None:
        pending = [record for record in records if not record.processed]
        completed = [record for record in records if record.processed]
        # load() keys off self.path, so the sidecar must be complete before it.
        if completed:
            write_records(self.completed_path, completed)
        else:
            self.completed_path.unlink(missing_ok=True)
        write_records(self.path, pending)
        LOGGER.info("Checkpoint saved: %d pending account(s) in %s", len(pending), self.path)

    def clear(self) -> None:
        for path in (self.path, self.completed_path):
            if path.exists():
                path.unlink()
                LOGGER.debug("Removed checkpoint file %s", path)


class CsvReporter:
    def __init__(self, path: Path) -> None:
        self.path = path

    def emit(self, projection: Projection) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=projection.columns)
            writer.writeheader()
            writer.writerows(projection.rows)
        LOGGER.info("Report with %d account(s) written to %s", len(projection.rows), self.path)


def close_session(backend: VaultBackend, session: Any) -> None:
    try:
        backend.disconnect(session)
    except Exception as exc:
        LOGGER.warning("Failed to disconnect from the vault cleanly: %s", exc)
    else:
        LOGGER.info("Disconnected from the vault.")


@contextmanager
def vault_session(backend: VaultBackend, config: ReportConfig, credential_source: str) -> Iterator[Any]:
    if config.auto_change_password:
        LOGGER.warning(
            "Auto password change is enabled; the credential used for this run will be replaced at logon."
        )
    LOGGER.info("Connecting to vault at %s as %s", config.vault_address or "default address", config.username)
    session = backend.connect(config.vault_address, config.username, credential_source, config.auto_change_password)
    try:
        yield session
    finally:
        close_session(backend, session)


def is_internal_file(identifier: str, suffix: str) -> bool:
    return bool(suffix) and identifier.lower().endswith(suffix.lower())


def enumerate_pending(backend: VaultBackend, session: Any, config: ReportConfig) -> List[AccountRecord]:
    records: List[AccountRecord] = []
    skipped = 0
    for name in backend.list_entries(session, config.pending_safe, config.folder):
        if is_internal_file(name, config.internal_file_suffix):
            skipped += 1
            continue
        records.append(AccountRecord(identifier=name))
    LOGGER.info(
        "Found %d pending account(s) in safe '%s' (%d internal file(s) skipped)",
        len(records),
        config.pending_safe,
        skipped,
    )
    return records


def enrich_record(backend: VaultBackend, session: Any, config: ReportConfig, record: AccountRecord) -> EnrichmentResult:
    try:
        pairs = list(backend.get_attributes(session, config.pending_safe, config.folder, record.identifier))
        record.merge(pairs, replace=True)
    except Exception as exc:
        return EnrichmentResult(record=record, error=EnrichmentError(record.identifier, exc))
    record.processed = True
    return EnrichmentResult(record=record)


def enrich_records(
    backend: VaultBackend, session: Any, config: ReportConfig, records: Sequence[AccountRecord]
) -> List[EnrichmentResult]:
    """Enrich unprocessed records in order, stopping at the first failure."""
    pending = [record for record in records if not record.processed]
    LOGGER.info("Fetching categories for %d of %d account(s)", len(pending), len(records))
    results: List[EnrichmentResult] = []
    for index, record in enumerate(pending, start=1):
        result = enrich_record(backend, session, config, record)
        results.append(result)
        if not result.ok:
            break
        LOGGER.debug("[%d/%d] %s: %d categories", index, len(pending), record.identifier, len(record.attributes))
    return results


def link_dependents(records: Sequence[AccountRecord], inherited_attributes: Sequence[str]) -> int:
    """Copy inherited categories from each master account onto its dependents.

    Returns the number of dependents linked to a master found in ``records``.
    """
    masters = {record.identifier: dict(record.attributes) for record in records}
    linked = 0
    for record in records:
        master_name = record.master_pass_name
        if not master_name:
            continue
        master = masters.get(master_name)
        if master is None:
            LOGGER.debug("Master account '%s' of '%s' is not pending; nothing to copy", master_name, record.identifier)
            continue
        for name in inherited_attributes:
            value = master.get(name)
            if value:
                record.attributes[name] = value
        linked += 1
    LOGGER.info("Linked %d dependent account(s) to their master", linked)
    return linked


def project(records: Sequence[AccountRecord], first_columns: Sequence[str], exclude_columns: Sequence[str]) -> Projection:
    excluded = set(exclude_columns)
    source_rows = [record.as_row() for record in records]
    candidates = dedupe([*first_columns, *(key for row in source_rows for key in row)])
    columns = [name for name in candidates if name not in excluded]
    rows = [{column: row.get(column, "") for column in columns} for row in source_rows]
    return Projection(columns=columns, rows=rows)


def run_report(
    config: ReportConfig,
    backend: VaultBackend,
    reporter: Reporter,
    credential_source: str,
    store: Optional[CheckpointStore] = None,
) -> Projection:
    store = store or CheckpointStore(config.checkpoint_path)
    with vault_session(backend, config, credential_source) as session:
        records = store.load()
        if records is None:
            records = enumerate_pending(backend, session, config)
        else:
            remaining = sum(1 for record in records if not record.processed)
            LOGGER.info("Resuming from checkpoint %s: %d of %d account(s) left", store.path, remaining, len(records))
        try:
            results = enrich_records(backend, session, config, records)
        except KeyboardInterrupt:
            store.save(records)
            raise
        failure = next((result for result in results if not result.ok), None)
        if failure is not None:
            store.save(records)
            LOGGER.error("Stopped at '%s': %s", failure.record.identifier, failure.error.cause)
            raise failure.error from failure.error.cause
        link_dependents(records, config.inherited_attributes)
    projection = project(records, config.first_columns, config.exclude_columns)
    reporter.emit(projection)
    store.clear()
    return projection


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Configuration file '{path}' does not exist")
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Configuration file '{path}' is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ValueError("Configuration file must contain a JSON object")
    return data


CLI_OVERRIDES: List[str] = [
    "backend",
    "vault_name",
    "vault_address",
    "username",
    "credential_file",
    "pacli_path",
    "allow_self_signed_certificates",
    "auto_change_password",
    "pending_safe",
    "folder",
    "output_path",
    "checkpoint_path",
]
CLI_LIST_OVERRIDES: List[str] = ["first_columns", "exclude_columns", "inherited_attributes"]


def load_config(args: argparse.Namespace) -> ReportConfig:
    data: Dict[str, Any] = {}
    if args.config:
        data.update(load_config_file(args.config))
    for name in CLI_OVERRIDES:
        value = getattr(args, name, None)
        if value is not None:
            data[name] = value
    for name in CLI_LIST_OVERRIDES:
        value = getattr(args, name, None)
        if value is not None:
            data[name] = parse_list(value)
    try:
        return ReportConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export the accounts waiting in a CyberArk pending safe to CSV.")
    parser.add_argument("--config", type=Path, help="JSON file with report settings; flags below override it.")
    parser.add_argument("--backend", choices=["pacli", "pcloud"], help="Vault backend (default: pacli).")
    parser.add_argument("--vault-name", dest="vault_name", help="Vault name used in the PACLI definition.")
    parser.add_argument("--vault-address", dest="vault_address", help="Vault address (or Identity URL for pcloud).")
    parser.add_argument("--username", help="Vault or Identity user to log on with.")
    parser.add_argument("--credential-file", dest="credential_file", type=Path, help="PACLI credential file.")
    parser.add_argument("--pacli-path", dest="pacli_path", type=Path, help="Path to the PACLI executable.")
    parser.add_argument(
        "--allow-self-signed-certificates",
        dest="allow_self_signed_certificates",
        action="store_true",
        default=None,
        help="Trust self-signed vault certificates.",
    )
    parser.add_argument(
        "--auto-change-password",
        dest="auto_change_password",
        action="store_true",
        default=None,
        help="Let the vault rotate the credential file at logon.",
    )
    parser.add_argument("--pending-safe", dest="pending_safe", help="Safe holding the pending accounts.")
    parser.add_argument("--folder", help="Folder inside the pending safe.")
    parser.add_argument("--output", dest="output_path", type=Path, help="CSV report path.")
    parser.add_argument("--checkpoint", dest="checkpoint_path", type=Path, help="In-progress checkpoint CSV path.")
    parser.add_argument("--first-columns", dest="first_columns", help="Comma separated columns to place first.")
    parser.add_argument("--exclude-columns", dest="exclude_columns", help="Comma separated columns to leave out.")
    parser.add_argument(
        "--inherited-attributes",
        dest="inherited_attributes",
        help="Comma separated categories dependents copy from their master account.",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=Path("logs"),
        help="Directory where execution logs should be written.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log every PACLI command and account.")
    return parser.parse_args(argv)


def setup_logging(log_dir: Path, verbose: bool = False) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = log_dir / f"pending_accounts_{timestamp}.log"
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
    handlers = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_path, encoding="utf-8"),
    ]
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )
    return log_path


def build_backend(config: ReportConfig) -> VaultBackend:
    if config.backend == "pcloud":
        return PCloudBackend(config.identity, config.allow_self_signed_certificates)
    return PacliBackend(config.pacli_path, config.vault_name, config.allow_self_signed_certificates)


def resolve_credential_source(config: ReportConfig) -> str:
    if config.backend == "pacli":
        if config.credential_file is None:
            raise ValueError("The PACLI backend requires a credential file.")
        if not config.credential_file.exists():
            raise FileNotFoundError(f"Credential file '{config.credential_file}' does not exist")
        return str(config.credential_file)
    password = ""
    while not password:
        password = getpass(f"Identity password for {config.username}: ")
        if not password:
            print("  Password is required.")
    return password


def main(argv: Optional[Sequence[str]] = None) -> Projection:
    args = parse_args(argv)
    log_path = setup_logging(args.log_dir, args.verbose)
    LOGGER.info("Execution log file: %s", log_path)
    ArkSystemConfig.disable_verbose_logging()

    config = load_config(args)
    backend = build_backend(config)
    credential_source = resolve_credential_source(config)
    projection = run_report(config, backend, CsvReporter(config.output_path), credential_source)
    LOGGER.info("All tasks completed successfully.")
    return projection


def run() -> None:
    try:
        main()
    except VaultConnectionError as error:
        raise SystemExit(f"Connection failed: {error}") from error
    except EnrichmentError as error:
        raise SystemExit(f"Error: {error}. Run the report again to resume from the checkpoint.") from error
    except (ReportError, ArkServiceException, ValueError, FileNotFoundError) as error:
        raise SystemExit(f"Error: {error}") from error


if __name__ == "__main__":
    run()
