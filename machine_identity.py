"""
Machine identity for node-locked licensing.

Reads the identifier the operating system already keeps for the host
(systemd machine-id, IOPlatformUUID, MachineGuid, smbios uuid) so it stays
stable across reboots. The raw value is only ever used as hash and key
derivation input.
"""
import logging
import platform
import re
import subprocess
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)

LINUX_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")
FREEBSD_ID_PATHS = ("/etc/hostid",)

_NON_ALNUM = re.compile(r"[^0-9A-Z]")
_IOREG_UUID = re.compile(r'"IOPlatformUUID"\s*=\s*"([^"]+)"')


class IdentityUnavailable(Exception):
    """The platform machine identifier could not be read."""


def normalize_machine_id(raw: str) -> str:
    """Uppercase, punctuation and whitespace stripped."""
    return _NON_ALNUM.sub("", raw.upper())


def _read_first(paths: Sequence[str]) -> Optional[str]:
    for p in paths:
        try:
            value = Path(p).read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.debug("machine id source %s unreadable: %r", p, e)
            continue
        if value:
            return value
    return None


def _run(cmd: Sequence[str]) -> Optional[str]:
    try:
        out = subprocess.check_output(list(cmd), stderr=subprocess.DEVNULL, timeout=10)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("machine id command %s failed: %r", cmd[0], e)
        return None
    return out.decode("utf-8", errors="ignore").strip() or None


def _darwin_id() -> Optional[str]:
    out = _run(["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"])
    if not out:
        return None
    m = _IOREG_UUID.search(out)
    return m.group(1) if m else None


def _windows_id() -> Optional[str]:
    try:
        import winreg

        key = winreg.OpenKey(
            winreg.HKEY_LOCAL_MACHINE,
            r"SOFTWARE\Microsoft\Cryptography",
            0,
            winreg.KEY_READ | winreg.KEY_WOW64_64KEY,
        )
        try:
            return str(winreg.QueryValueEx(key, "MachineGuid")[0])
        finally:
            winreg.CloseKey(key)
    except OSError as e:
        logger.debug("MachineGuid unreadable: %r", e)
        return None


class MachineIdentityResolver:
    def __init__(
        self,
        system: Optional[str] = None,
        linux_paths: Sequence[str] = LINUX_ID_PATHS,
        freebsd_paths: Sequence[str] = FREEBSD_ID_PATHS,
    ):
        self.system = system or platform.system()
        self.linux_paths = linux_paths
        self.freebsd_paths = freebsd_paths

    def _raw(self) -> Optional[str]:
        if self.system == "Linux":
            return _read_first(self.linux_paths)
        if self.system == "Darwin":
            return _darwin_id()
        if self.system == "Windows":
            return _windows_id()
        if self.system == "FreeBSD":
            return _run(["kenv", "-q", "smbios.system.uuid"]) or _read_first(
                self.freebsd_paths
            )
        return None

    def resolve(self) -> str:
        raw = self._raw()
        normalized = normalize_machine_id(raw) if raw else ""
        if not normalized:
            logger.error("no machine identifier available on %s", self.system)
            raise IdentityUnavailable(
                f"Failed to retrieve machine ID on platform {self.system!r}"
            )
        return normalized
