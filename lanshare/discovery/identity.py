"""
Builds the per-process device identity announced to peers.
"""

import logging
import random
import uuid
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from lanshare.config import DEVICE_MODEL, PROTOCOL_VERSION
from lanshare.discovery.models import DeviceIdentity, DeviceType, ProtocolType

logger = logging.getLogger(__name__)

ADJECTIVES = [
    "Neon", "Cosmic", "Turbo", "Silent", "Electric", "Quantum",
    "Hidden", "Mystic", "Clever", "Swift", "Brave", "Pixel",
    "Sneaky", "Bold", "Lucky", "Happy", "Fierce", "Calm"
]

ANIMALS = [
    "Fox", "Panda", "Gopher", "Bear", "Snail", "Owl",
    "Wolf", "Tiger", "Hawk", "Dolphin", "Penguin", "Falcon",
    "Eagle", "Lion", "Shark", "Whale", "Octopus", "Duck"
]


def random_alias() -> str:
    return f"{random.choice(ADJECTIVES)} {random.choice(ANIMALS)}"


def certificate_fingerprint(cert_path: str | Path) -> str:
    """SHA-256 fingerprint of a PEM certificate, as upper-case hex."""
    cert = x509.load_pem_x509_certificate(Path(cert_path).read_bytes())
    return cert.fingerprint(hashes.SHA256()).hex().upper()


def create_identity(
    port: int,
    alias: str | None = None,
    protocol: ProtocolType = ProtocolType.HTTP,
    cert_file: str | None = None,
    device_model: str = DEVICE_MODEL,
    device_type: DeviceType = DeviceType.HEADLESS,
) -> DeviceIdentity:
    """
    Create the identity for this process.

    With HTTPS and a certificate, the fingerprint is the certificate hash so
    peers can pin it; otherwise it is a random UUID that lives as long as the
    process.
    """
    if protocol == ProtocolType.HTTPS and cert_file:
        fingerprint = certificate_fingerprint(cert_file)
    else:
        fingerprint = str(uuid.uuid4())

    identity = DeviceIdentity(
        alias=alias or random_alias(),
        version=PROTOCOL_VERSION,
        device_model=device_model,
        device_type=device_type,
        fingerprint=fingerprint,
        port=port,
        protocol=protocol,
    )
    logger.info(f"Initialized identity with alias: {identity.alias}")
    return identity
