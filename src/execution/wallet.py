import base58
from solders.keypair import Keypair
from pathlib import Path
import json
import os


def load_keypair(secret: str) -> Keypair:
    """Load a signing keypair from a base58 secret, a JSON byte array, or a path to a Solana CLI key file"""
    secret = secret.strip()
    path = Path(os.path.expanduser(secret))
    if not secret.startswith('[') and path.suffix == '.json' and path.exists():
        with open(path, 'r') as f:
            secret = f.read().strip()

    if secret.startswith('['):
        try:
            return Keypair.from_bytes(bytes(json.loads(secret)))
        except ValueError as e:
            raise ValueError(f"Invalid JSON key material: {str(e)}") from e

    try:
        return Keypair.from_bytes(base58.b58decode(secret))
    except ValueError as e:
        raise ValueError(f"Invalid base58 private key: {str(e)}") from e
