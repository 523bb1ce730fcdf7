"""
Credential store: keys.json in, used_keys.json in and out.

keys.json is either an array of tokens (named api1, api2, ...) or an object
mapping names to tokens. used_keys.json sits next to it and carries per-key
usage across runs: credits used, remaining credits, and whether the key was
found INVALID or EXHAUSTED. Cooling is never persisted; keys banned only for
rate limiting come back ACTIVE on the next run.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from .coordinator.credentials import REASON_AUTH, REASON_CREDITS, REASON_PRECHECK
from .coordinator.types import Credential, CredentialState
from .models import KeyStatus, KeyUsage


class KeysFileError(ValueError):
    """keys.json is missing, malformed, or has no usable keys."""


def parse_keys(raw: object) -> List[Tuple[str, str]]:
    """Normalize the keys.json payload into (name, token) pairs."""
    if isinstance(raw, list):
        tokens = [str(t).strip() for t in raw if t is not None and str(t).strip()]
        entries = [(f"api{idx}", token) for idx, token in enumerate(tokens, start=1)]
    elif isinstance(raw, dict):
        entries = [
            (str(name), str(token).strip())
            for name, token in raw.items()
            if name and token is not None and str(token).strip()
        ]
    else:
        raise KeysFileError("keys.json must be an array of tokens OR an object of named tokens.")

    if not entries:
        raise KeysFileError("keys.json has no usable keys.")
    return entries


class CredentialStore:
    def __init__(
        self,
        keys_path: str | Path,
        used_keys_path: Optional[str | Path] = None,
        *,
        credit_cap: Optional[int] = None,
    ):
        self.keys_path = Path(keys_path)
        self.used_keys_path = (
            Path(used_keys_path)
            if used_keys_path is not None
            else self.keys_path.with_name("used_keys.json")
        )
        self.credit_cap = credit_cap

    # --------------------------- reads

    def load_keys(self) -> List[Tuple[str, str]]:
        if not self.keys_path.exists():
            raise KeysFileError(f"keys.json not found at: {self.keys_path}")
        try:
            raw = json.loads(self.keys_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise KeysFileError(f"{self.keys_path} is not valid JSON: {exc}") from exc
        return parse_keys(raw)

    def load_usage(self) -> Dict[str, KeyUsage]:
        if not self.used_keys_path.exists():
            return {}
        try:
            raw = json.loads(self.used_keys_path.read_text(encoding="utf-8")) or {}
        except json.JSONDecodeError:
            logger.warning(f"{self.used_keys_path} is unreadable, starting with fresh key usage")
            return {}

        usage: Dict[str, KeyUsage] = {}
        for name, entry in raw.items():
            try:
                usage[name] = KeyUsage.model_validate(entry)
            except PydanticValidationError as exc:
                logger.warning(f"Ignoring bad used_keys.json entry for {name}: {exc}")
        return usage

    def credentials(self) -> List[Credential]:
        """Build credentials from keys.json, restoring persisted usage and bans."""
        usage = self.load_usage()
        creds: List[Credential] = []
        for name, token in self.load_keys():
            cred = Credential(id=name, secret=token, credit_cap=self.credit_cap)
            u = usage.get(name)
            if u is not None:
                cred.credits_used = u.used_credits
                cred.last_used_at = u.last_used_at
                if u.status is KeyStatus.INVALID:
                    cred.state = CredentialState.BANNED
                    cred.reason = u.reason or REASON_AUTH
            if cred.calls_remaining == 0:
                cred.state = CredentialState.BANNED
                cred.reason = REASON_CREDITS
            creds.append(cred)

        active = sum(1 for c in creds if c.state is CredentialState.ACTIVE)
        logger.info(f"Loaded {len(creds)} keys from {self.keys_path} ({active} active)")
        return creds

    # --------------------------- writes

    @staticmethod
    def _status(cred: Credential) -> KeyStatus:
        if cred.calls_remaining == 0:
            return KeyStatus.EXHAUSTED
        if cred.state is CredentialState.BANNED and cred.reason in (REASON_AUTH, REASON_PRECHECK):
            return KeyStatus.INVALID
        return KeyStatus.ACTIVE

    def save(self, credentials: Iterable[Credential]) -> None:
        """Write used_keys.json atomically (temp file + rename)."""
        state = {}
        for cred in credentials:
            status = self._status(cred)
            state[cred.id] = KeyUsage(
                token_hint=cred.hint,
                used_credits=cred.credits_used,
                remaining_credits=cred.calls_remaining,
                status=status,
                reason=cred.reason if status is not KeyStatus.ACTIVE else "",
                last_used_at=cred.last_used_at,
            ).model_dump(mode="json")

        self.used_keys_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.used_keys_path.with_name(self.used_keys_path.name + ".tmp")
        tmp.write_text(json.dumps(state, indent=2), encoding="utf-8")
        os.replace(tmp, self.used_keys_path)
