"""
Loan Harness - Credential Generation

A fresh BIP-39 mnemonic per run. The addresses funded and used by the
CLI are the configured fixed test addresses; they are not derived from
the mnemonic.
"""

from __future__ import annotations

import logging

from mnemonic import Mnemonic

from engine.config import CredentialSettings
from harness.types import Credential

logger = logging.getLogger("loan_harness.credentials")


class CredentialError(Exception):
    """Raised when a credential cannot be generated."""


def generate_credential(settings: CredentialSettings | None = None) -> Credential:
    settings = settings or CredentialSettings()
    try:
        phrase = Mnemonic("english").generate(strength=settings.strength)
    except (ValueError, LookupError, OSError) as e:
        raise CredentialError(f"Failed to generate mnemonic: {e}") from e

    logger.info("Generated mnemonic (%d words)", len(phrase.split()))
    logger.info("BTC address: %s", settings.btc_address)
    logger.info("LavaUSD pubkey: %s", settings.lava_usd_pubkey)

    return Credential(
        mnemonic=phrase,
        funding_address=settings.btc_address,
        settlement_pubkey=settings.lava_usd_pubkey,
    )
