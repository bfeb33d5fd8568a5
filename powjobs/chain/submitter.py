"""Transaction submission through the signer service."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

import httpx
import structlog

from powjobs.orchestrator.protocol import TransactionOutcome
from powjobs.settings import SignerSettings

LOGGER = structlog.get_logger(__name__)

# action -> (signer function, entity argument)
SIGNER_FUNCTIONS: Dict[str, Tuple[str, str]] = {
    "struct_build_complete": ("tx_struct_build_complete", "struct_id"),
    "planet_raid_complete": ("tx_planet_raid_complete", "fleet_id"),
    "ore_miner_complete": ("tx_struct_ore_mine_complete", "struct_id"),
    "ore_refinery_complete": ("tx_struct_ore_refine_complete", "struct_id"),
}


class TransactionSubmitter(Protocol):
    def submit(self, action: str, player_id: str, args: Mapping[str, Any]) -> TransactionOutcome:
        ...


def transaction_args(action: str, entity_id: str, proof: str, nonce: str) -> Dict[str, Any]:
    """Build the argument mapping the signer expects for a completed proof."""
    _, entity_key = SIGNER_FUNCTIONS[action]
    return {"proof": proof, "nonce": nonce, entity_key: entity_id}


class SignerApiSubmitter:
    """Posts completion transactions to the signer's HTTP API.

    Submission is refused unless ``danger`` is enabled. Transport and
    response errors are folded into an ``error`` outcome.
    """

    def __init__(self, settings: SignerSettings, *, client: Optional[httpx.Client] = None) -> None:
        self._settings = settings
        self._client = client or httpx.Client(timeout=settings.timeout_seconds)
        self._owns_client = client is None

    def submit(self, action: str, player_id: str, args: Mapping[str, Any]) -> TransactionOutcome:
        if not self._settings.danger:
            return TransactionOutcome(
                status="error",
                message="Transaction submission is disabled",
                error="Set DANGER=true to allow transaction submission",
            )
        if action not in SIGNER_FUNCTIONS:
            return TransactionOutcome(
                status="error",
                message=f"Unknown action: {action}",
                error=f"Supported actions: {', '.join(SIGNER_FUNCTIONS)}",
            )
        function, entity_key = SIGNER_FUNCTIONS[action]
        required = (entity_key, "proof", "nonce")
        missing = [key for key in required if not args.get(key)]
        if missing:
            return TransactionOutcome(
                status="error",
                message="Missing required arguments",
                error=f"{action} requires: {', '.join(required)}",
            )

        url = f"{self._settings.api_url.rstrip('/')}/transactions"
        body = {"function": function, "player_id": player_id, "args": dict(args)}
        try:
            response = self._client.post(url, json=body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.warning("transaction_submit_failed", action=action, reason=str(exc))
            return TransactionOutcome(
                status="error",
                message="Transaction submission failed",
                error=f"Signer error: {exc}",
            )
        return _outcome_from_payload(payload)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def _outcome_from_payload(payload: Any) -> TransactionOutcome:
    transaction_hash: Optional[str] = None
    transaction_id: Optional[int] = None
    status = "pending"
    if isinstance(payload, dict):
        transaction_hash = payload.get("txhash") or payload.get("transaction_hash") or payload.get("hash")
        raw_id = payload.get("id", payload.get("transaction_id"))
        if raw_id is not None and str(raw_id).isdigit():
            transaction_id = int(raw_id)
        status = payload.get("status") or "pending"
    elif isinstance(payload, str):
        transaction_hash = payload
    message = "Transaction broadcast successfully" if status == "broadcast" else "Transaction created"
    return TransactionOutcome(
        status=status,
        message=message,
        transaction_hash=transaction_hash,
        transaction_id=transaction_id,
    )
