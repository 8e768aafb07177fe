"""
Tenant profiles: saved tenant/app identities selectable with ``--profile``.

Stored in ~/.m365_audit_export/profiles.json. A profile carries the tenant and
app registration ids, how to authenticate, and an optional default output
directory for that tenant's exports.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from .config import ConfigurationError

DEFAULT_PROFILES_FILE = Path.home() / ".m365_audit_export" / "profiles.json"


@dataclass
class TenantProfile:
    name: str
    tenant_id: str
    client_id: str
    auth_mode: str = "certificate"     # certificate | secret | delegated
    cert_path: str = "./base64.txt"
    output_dir: str = ""
    notes: str = ""

    def resolve_cert_path(self) -> str:
        """Absolute cert path; relative paths resolve against the working directory."""
        p = Path(self.cert_path).expanduser()
        return str(p if p.is_absolute() else Path.cwd() / p)


@dataclass
class ProfileStore:
    path: Path = DEFAULT_PROFILES_FILE
    profiles: dict[str, TenantProfile] = field(default_factory=dict)
    default_profile: str = ""

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ProfileStore":
        """Load profiles; a missing file gives an empty store."""
        store = cls(path=Path(path) if path else DEFAULT_PROFILES_FILE)
        if not store.path.exists():
            return store
        try:
            data = json.loads(store.path.read_text(encoding="utf-8"))
            for name, pdata in data.get("profiles", {}).items():
                pdata = {k: v for k, v in pdata.items() if k != "name"}
                store.profiles[name] = TenantProfile(name=name, **pdata)
        except (json.JSONDecodeError, TypeError) as e:
            raise ConfigurationError(f"Failed to parse {store.path}: {e}") from e
        store.default_profile = data.get("default_profile", "")
        return store

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "default_profile": self.default_profile,
            "profiles": {
                name: {k: v for k, v in asdict(p).items() if k != "name"}
                for name, p in self.profiles.items()
            },
        }
        self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    def add(self, profile: TenantProfile, set_default: bool = False) -> None:
        self.profiles[profile.name] = profile
        if set_default or not self.default_profile:
            self.default_profile = profile.name
        self.save()

    def remove(self, name: str) -> bool:
        if name not in self.profiles:
            return False
        del self.profiles[name]
        if self.default_profile == name:
            self.default_profile = next(iter(self.profiles), "")
        self.save()
        return True

    def get(self, name: str) -> Optional[TenantProfile]:
        """Case-insensitive lookup."""
        wanted = name.lower()
        return next((p for n, p in self.profiles.items() if n.lower() == wanted), None)

    def get_default(self) -> Optional[TenantProfile]:
        if self.default_profile in self.profiles:
            return self.profiles[self.default_profile]
        return next(iter(self.profiles.values()), None)

    def set_default(self, name: str) -> bool:
        if name not in self.profiles:
            return False
        self.default_profile = name
        self.save()
        return True

    def list_profiles(self) -> list[TenantProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.name)
