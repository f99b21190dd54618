import logging
import subprocess

from wg_registry.errors import DependencyFailure

logger = logging.getLogger(__name__)


def _wg(args, stdin=None):
    cmd = ["wg", *args]
    logger.debug("Running %s", " ".join(cmd))
    try:
        proc = subprocess.run(
            cmd,
            input=stdin,
            capture_output=True,
            text=True,
            check=True,
        )
    except FileNotFoundError:
        raise DependencyFailure("'wg' not found (install wireguard-tools)")
    except subprocess.CalledProcessError as e:
        raise DependencyFailure(f"{' '.join(cmd)} failed: {(e.stderr or '').strip() or e}")
    out = proc.stdout.strip()
    if not out:
        raise DependencyFailure(f"{' '.join(cmd)} returned nothing")
    return out


def generate_private_key():
    return _wg(["genkey"])


def private_to_public(private_key):
    # pubkey lit la clé privée sur stdin
    return _wg(["pubkey"], stdin=private_key.strip() + "\n")


class KeyProvider:
    """Key generation delegated to wg(8)."""

    def generate_private_key(self):
        return generate_private_key()

    def derive_public_key(self, private_key):
        return private_to_public(private_key)

    def generate_keypair(self):
        priv = self.generate_private_key()
        return priv, self.derive_public_key(priv)
