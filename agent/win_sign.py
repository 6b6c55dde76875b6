# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: checks Windows Authenticode signatures for executable files using PowerShell.
get_signature_info() returns whether the signature is valid, whether any signer certificate is
present, and the certificate subject. unlike a best-effort lookup it raises on failure, so the
enrichment layer can tell "unsigned" apart from "could not check".
"""

from __future__ import annotations  # lets us use string annotations before functions are defined

import json  # for parsing JSON output from PowerShell
import os  # for checking the file path and its mtime
import subprocess  # for running PowerShell commands
import sys  # for checking if we are on Windows
import threading
from typing import Any  # type hint for flexible dictionary values


class SignatureUnavailable(RuntimeError):
    """the signature could not be determined (not Windows, no file, PowerShell failed, ...)"""


def get_signature_info(path: str, timeout: float = 5.0) -> dict[str, Any]:
    """
    Windows-only: returns {"valid": bool, "signed": bool, "status": str, "subject": str}
    using PowerShell Get-AuthenticodeSignature. raises SignatureUnavailable otherwise.
    """
    if sys.platform != "win32":
        raise SignatureUnavailable("Authenticode checks need Windows")
    p = (path or "").strip().strip('"')  # clean up the path, remove whitespace and quotes
    if not p or not os.path.exists(p):
        raise SignatureUnavailable(f"no such file: {p!r}")

    ps = [
        "powershell",  # run PowerShell
        "-NoProfile",  # do not load user profile (faster startup)
        "-ExecutionPolicy",
        "Bypass",  # bypass any execution policy restrictions
        "-Command",
        "$s=Get-AuthenticodeSignature -FilePath '{}' ; "
        "$o=@{{ valid=($s.Status -eq 'Valid'); signed=($null -ne $s.SignerCertificate); "
        "status=[string]$s.Status; subject=($s.SignerCertificate.Subject) }} ; "
        "ConvertTo-Json -Compress -InputObject $o".format(
            p.replace("'", "''")  # escape single quotes in path
        ),
    ]
    try:
        proc = subprocess.run(ps, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise SignatureUnavailable(f"PowerShell did not answer: {exc}") from exc
    if proc.returncode != 0:
        raise SignatureUnavailable(f"PowerShell exited with {proc.returncode}")
    out = (proc.stdout or "").strip()
    if not out:
        raise SignatureUnavailable("PowerShell returned no output")
    try:
        data = json.loads(out)
    except ValueError as exc:
        raise SignatureUnavailable(f"unreadable PowerShell output: {out[:80]!r}") from exc
    if not isinstance(data, dict):
        raise SignatureUnavailable("unexpected PowerShell output shape")
    return {
        "valid": bool(data.get("valid", False)),
        "signed": bool(data.get("signed", False)),
        "status": str(data.get("status") or ""),
        "subject": str(data.get("subject") or "")[:512],  # limit to avoid huge values
    }


class SignatureCache:
    """remembers signature answers keyed by (path, mtime) so each binary is checked once"""

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = timeout
        self._cache: dict[tuple[str, float], bool] = {}
        self._lock = threading.Lock()

    def is_signed(self, path: str) -> bool:
        """True only for a valid Authenticode signature"""
        st = os.stat(path)  # raises when the file vanished, callers treat that as a failed lookup
        key = (path, st.st_mtime)
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        valid = bool(get_signature_info(path, timeout=self.timeout)["valid"])
        with self._lock:
            self._cache[key] = valid
        return valid
