"""YAML configuration loader for bankdedupe.

Loads the seed config files from the config/ directory:
  accounts.yaml, dedupe.yaml
"""

from pathlib import Path

import yaml

DEFAULT_HEADER_SCAN_LIMIT = 20


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._accounts: list[dict] | None = None
        self._dedupe: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def accounts(self) -> list[dict]:
        if self._accounts is None:
            data = self._load("accounts.yaml")
            self._accounts = data.get("accounts", data) if isinstance(data, dict) else data
        return self._accounts

    @property
    def dedupe(self) -> dict:
        """dedupe.yaml contents; optional file, empty dict when absent."""
        if self._dedupe is None:
            if (self.config_dir / "dedupe.yaml").exists():
                data = self._load("dedupe.yaml")
                if not isinstance(data, dict):
                    raise ValueError("dedupe.yaml must be a mapping")
                self._dedupe = data
            else:
                self._dedupe = {}
        return self._dedupe

    def account_by_id(self, account_id: str) -> dict | None:
        for acct in self.accounts:
            if acct.get("id") == account_id:
                return acct
        return None

    def extra_match_fields_for(self, account_id: str) -> list[str]:
        """Raw statement columns used to tell apart same-day same-amount rows.

        Per-account list wins over the dedupe.yaml default.
        """
        acct = self.account_by_id(account_id) or {}
        fields = acct.get("extra_match_fields")
        if fields is None:
            fields = self.dedupe.get("extra_match_fields", [])
        return [str(f) for f in fields if f]

    def strict_intra_file_for(self, account_id: str) -> bool:
        """Whether identical lines in one file need a reference to be auto-skipped."""
        acct = self.account_by_id(account_id) or {}
        if "strict_intra_file" in acct:
            return bool(acct["strict_intra_file"])
        return bool(self.dedupe.get("strict_intra_file", False))

    @property
    def header_synonyms(self) -> dict[str, list[str]]:
        """Extra statement header synonyms keyed by column kind."""
        raw = self.dedupe.get("header_synonyms") or {}
        return {
            str(kind): [str(n) for n in names if n]
            for kind, names in raw.items()
            if isinstance(names, list)
        }

    @property
    def header_scan_limit(self) -> int:
        return int(self.dedupe.get("header_scan_limit", DEFAULT_HEADER_SCAN_LIMIT))
