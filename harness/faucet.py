"""
Loan Harness - Funding Step

Requests test funds for both assets of a run from the testnet faucets:
  1. BTC (mutinynet) to the funding address: POST {"address", "sats"}
  2. LavaUSD to the settlement pubkey:       POST {"pubkey"}

The step only checks the faucet's immediate acknowledgement. It does not
retry and does not verify that the funds landed; the orchestrator's
settling wait covers propagation. The first failure stops the step.
"""

from __future__ import annotations

import logging

import httpx

from engine.config import FaucetSettings
from harness.types import Credential, FaucetOutcome

logger = logging.getLogger("loan_harness.faucet")


class FaucetClient:
    """
    Thin httpx wrapper around the two faucet endpoints.

    Pass `transport` (e.g. httpx.MockTransport) to run against a fake.
    """

    def __init__(
        self,
        settings: FaucetSettings | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.settings = settings or FaucetSettings()
        self._transport = transport

    def fund(self, credential: Credential) -> FaucetOutcome:
        """Fund both assets, BTC first. Returns the first failure, if any."""
        with httpx.Client(
            timeout=self.settings.timeout_seconds,
            transport=self._transport,
        ) as client:
            outcome = self._post(
                client, "BTC", self.settings.btc_url,
                {"address": credential.funding_address, "sats": self.settings.sats},
            )
            if not outcome.success:
                return outcome
            return self._post(
                client, "LavaUSD", self.settings.lava_usd_url,
                {"pubkey": credential.settlement_pubkey},
            )

    def _post(self, client: httpx.Client, asset: str, url: str,
              payload: dict) -> FaucetOutcome:
        try:
            resp = client.post(url, json=payload)
        except httpx.HTTPError as e:
            err = f"{asset} faucet request error: {e}"
            logger.error(err)
            return FaucetOutcome(success=False, error=err)

        if not resp.is_success:
            err = f"{asset} faucet request failed with status: {resp.status_code}"
            logger.error(err)
            return FaucetOutcome(success=False, error=err)

        logger.info("%s faucet request successful", asset)
        return FaucetOutcome(success=True)
