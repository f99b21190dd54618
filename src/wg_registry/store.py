# src/wg_registry/store.py
from __future__ import annotations
import fcntl
import ipaddress
import logging
import os
import re
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from wg_core.config_builder import LAST_HOST_LINE, generate_peer_block

from .errors import AlreadyExists, MalformedConfig, NotFound, PermissionDenied
from .ipam import highest_host, host_octet
from .models import InterfaceConfig, InterfaceContext, PeerEntry
from .settings import Settings

logger = logging.getLogger(__name__)


BEGIN_RE = re.compile(r"^#\s*BEGIN\s+(\S+)\s*$")
END_RE = re.compile(r"^#\s*END\s+(\S+)\s*$")
SECTION_RE = re.compile(r"^\[(\w+)\]\s*$")
KEY_RE = re.compile(r"^([A-Za-z]+)\s*=\s*(.*?)\s*$")
LAST_HOST_RE = re.compile(r"^#\s*LastHost\s*=\s*(\d+)\s*$")


def is_accessible(path: Path) -> bool:
    return os.access(path, os.R_OK | os.W_OK)


# -----------------------------
# Parsing / rendu
# -----------------------------

def _key_values(lines: List[str], section: str) -> dict:
    values = {}
    current = None
    for line in lines:
        stripped = line.strip()
        m = SECTION_RE.match(stripped)
        if m:
            current = m.group(1)
            continue
        if current != section or not stripped or stripped.startswith("#"):
            continue
        m = KEY_RE.match(stripped)
        if m and m.group(1) not in values:
            values[m.group(1)] = m.group(2)
    return values


def _first_ipv4(value: str, what: str) -> str:
    """
    Première entrée IPv4 d'une liste 'a, b, c' ; les entrées IPv6 sont ignorées.
    """
    for item in value.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            ip = ipaddress.ip_interface(item)
        except ValueError:
            raise MalformedConfig(f"{what}: invalid address '{item}'")
        if ip.version == 4:
            return item
    raise MalformedConfig(f"{what}: no IPv4 address in '{value}'")


def _peer_from_block(name: str, lines: List[str], lead: str, where: str) -> PeerEntry:
    values = _key_values(lines, "Peer")
    if "PublicKey" not in values or "AllowedIPs" not in values:
        raise MalformedConfig(f"{where}: block '{name}' lacks PublicKey or AllowedIPs")
    address = _first_ipv4(values["AllowedIPs"], f"{where}: block '{name}'")
    return PeerEntry(
        name=name,
        public_key=values["PublicKey"],
        address=address,
        raw=lead + "".join(lines),
    )


def parse_interface(name: str, text: str, where: str = "") -> InterfaceConfig:
    """
    Découpe le fichier en segments : texte libre et blocs # BEGIN / # END.

    Les lignes vides qui précèdent un bloc lui sont rattachées, pour que
    la suppression d'un bloc emporte aussi son séparateur.
    """
    where = where or name
    segments: list = []
    free: List[str] = []
    block: Optional[List[str]] = None
    block_name = ""
    lead = ""

    for lineno, line in enumerate(text.splitlines(keepends=True), 1):
        stripped = line.strip()
        if block is not None:
            block.append(line)
            m = END_RE.match(stripped)
            if m and m.group(1).lower() == block_name.lower():
                segments.append(_peer_from_block(block_name, block, lead, where))
                block = None
            elif BEGIN_RE.match(stripped):
                raise MalformedConfig(f"{where}:{lineno}: nested BEGIN inside block '{block_name}'")
            continue

        m = BEGIN_RE.match(stripped)
        if m:
            split = len(free)
            while split > 0 and not free[split - 1].strip():
                split -= 1
            if split:
                segments.append("".join(free[:split]))
            lead = "".join(free[split:])
            free = []
            block = [line]
            block_name = m.group(1)
            continue
        if END_RE.match(stripped):
            raise MalformedConfig(f"{where}:{lineno}: END without matching BEGIN")
        free.append(line)

    if block is not None:
        raise MalformedConfig(f"{where}: block '{block_name}' is not terminated")
    if free:
        segments.append("".join(free))

    header_lines = [l for s in segments if isinstance(s, str) for l in s.splitlines()]
    values = _key_values(header_lines, "Interface")
    if "Address" not in values:
        raise MalformedConfig(f"{where}: [Interface] has no Address")

    port = values.get("ListenPort")
    last_host = None
    for l in header_lines:
        m = LAST_HOST_RE.match(l.strip())
        if m:
            last_host = int(m.group(1))

    try:
        listen_port = int(port) if port else None
    except ValueError:
        raise MalformedConfig(f"{where}: invalid ListenPort '{port}'")

    return InterfaceConfig(
        name=name,
        address=_first_ipv4(values["Address"], f"{where}: [Interface] Address"),
        listen_port=listen_port,
        private_key=values.get("PrivateKey"),
        last_host=last_host,
        segments=segments,
    )


def render_interface(config: InterfaceConfig) -> str:
    return "".join(s if isinstance(s, str) else s.raw for s in config.segments)


def _set_last_host(config: InterfaceConfig, host: int) -> None:
    line = LAST_HOST_LINE.format(host=host)
    for i, seg in enumerate(config.segments):
        if not isinstance(seg, str):
            continue
        lines = seg.splitlines(keepends=True)
        for j, l in enumerate(lines):
            if LAST_HOST_RE.match(l.strip()):
                lines[j] = line
                config.segments[i] = "".join(lines)
                config.last_host = host
                return

    # Pas encore de marque : on l'ajoute à la fin de l'en-tête [Interface]
    if config.segments and isinstance(config.segments[0], str):
        header = config.segments[0]
        body = header.rstrip("\n")
        trailing = header[len(body):]
        config.segments[0] = body + "\n" + line + trailing[1:]
    else:
        config.segments.insert(0, line)
    config.last_host = host


def _peer_private_key(text: str) -> Optional[str]:
    return _key_values(text.splitlines(), "Interface").get("PrivateKey")


# -----------------------------
# Store
# -----------------------------

class ConfigStore:
    def __init__(self, settings: Settings):
        self.settings = settings

    def context(self, name: str) -> InterfaceContext:
        return self.settings.context(name)

    def exists(self, name: str) -> bool:
        return self.context(name).conf_path.exists()

    def list_interfaces(self) -> List[str]:
        wg_dir = self.settings.wg_dir
        if not wg_dir.is_dir():
            return []
        names = []
        for path in sorted(wg_dir.glob("*.conf")):
            try:
                head = path.read_text(encoding="utf-8")
            except OSError as e:
                logger.warning("Cannot read %s: %s", path, e)
                continue
            if "[Interface]" in head:
                names.append(path.stem)
        return names

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        """Verrou exclusif sur l'interface, entre deux invocations."""
        ctx = self.context(name)
        ctx.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with ctx.lock_path.open("a") as f:
            logger.debug("Waiting for lock %s", ctx.lock_path)
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

    # ---------- Fichier d'interface ----------

    def read_interface(self, name: str) -> InterfaceConfig:
        path = self.context(name).conf_path
        if not path.exists():
            raise NotFound(f"Interface '{name}' does not exist ({path})")
        if not is_accessible(path):
            raise PermissionDenied(f"{path} must be readable and writable")
        with path.open("r", encoding="utf-8") as f:
            return parse_interface(name, f.read(), where=str(path))

    def write_interface(self, config: InterfaceConfig) -> None:
        _atomic_write(self.context(config.name).conf_path, render_interface(config))

    def create_interface(self, name: str, text: str) -> Path:
        path = self.context(name).conf_path
        if path.exists():
            raise AlreadyExists(f"Interface '{name}' already exists ({path})")
        parse_interface(name, text)
        _atomic_write(path, text)
        return path

    def delete_interface(self, name: str) -> None:
        ctx = self.context(name)
        if ctx.conf_path.exists():
            ctx.conf_path.unlink()
            logger.info("Removed %s", ctx.conf_path)
        if ctx.peer_dir.exists():
            shutil.rmtree(ctx.peer_dir)
            logger.info("Removed %s", ctx.peer_dir)
        if ctx.lock_path.exists():
            ctx.lock_path.unlink()

    def append_peer_block(
        self,
        config: InterfaceConfig,
        name: str,
        public_key: str,
        address: str,
    ) -> PeerEntry:
        """
        Ajoute le bloc du peer en fin de fichier et écrit le fichier.
        L'appelant vérifie au préalable que le peer n'existe pas.
        """
        text = render_interface(config)
        lead = ""
        if text and not text.endswith("\n"):
            lead += "\n"
        if text and not text.endswith("\n\n"):
            lead += "\n"

        block = generate_peer_block(name, public_key, address)
        entry = PeerEntry(name=name, public_key=public_key, address=address, raw=lead + block)
        config.segments.append(entry)

        host = int(entry.ip) & 0xFF
        if config.last_host is None or host > config.last_host:
            _set_last_host(config, host)

        self.write_interface(config)
        return entry

    def remove_peer_block(self, config: InterfaceConfig, name: str) -> bool:
        entry = config.find_peer(name)
        if entry is None:
            logger.info("Peer '%s' does not exist on %s", name, config.name)
            return False
        config.segments.remove(entry)

        # Le plus haut hôte retiré reste réservé : on le garde dans la marque
        if entry.ip in config.subnet:
            host = host_octet(entry.address)
            highest = highest_host(config)
            if highest is None or host > highest:
                _set_last_host(config, host)

        self.write_interface(config)
        return True

    # ---------- Fichiers des peers ----------

    def peer_file(self, interface: str, name: str) -> Path:
        return self.context(interface).peer_dir / f"{name}.conf"

    def write_peer_file(self, interface: str, name: str, text: str) -> Path:
        path = self.peer_file(interface, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.parent.chmod(0o700)
        _atomic_write(path, text)
        return path

    def read_peer_file(self, interface: str, name: str) -> str:
        path = self.peer_file(interface, name)
        if not path.exists():
            raise NotFound(f"Peer config {path} does not exist")
        return path.read_text(encoding="utf-8")

    def read_peer_private_key(self, interface: str, name: str) -> Optional[str]:
        path = self.peer_file(interface, name)
        if not path.exists():
            return None
        return _peer_private_key(path.read_text(encoding="utf-8"))

    def delete_peer_file(self, interface: str, name: str) -> bool:
        path = self.peer_file(interface, name)
        if not path.exists():
            return False
        path.unlink()
        return True


def _atomic_write(path: Path, text: str) -> None:
    # Attention aux permissions : 600, les fichiers contiennent des clés privées
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
