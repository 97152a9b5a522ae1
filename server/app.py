# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for sealcash (FastAPI).

Endpoints for wallet login, user profiles and the escrow lifecycle: create,
accept/reject, lock BTC, submit transfer proof, release, refund.

Authentication: GET /auth/challenge, sign it with the Bitcoin wallet, POST
/auth/verify for a bearer token. Every mutating request carries
Authorization: Bearer <token>.

Responses use camelCase field names. Engine faults map to 400 {"error"},
missing records to 404, authentication failures to 401.
"""

import logging
import os
import time
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from crypto import generate_ed25519_keypair, load_ed25519_key, save_ed25519_key
from server.auth import ChallengeAuth
from server.broadcast import ChainBroadcaster
from server.config import Settings
from server.covenant import CovenantBuilder
from server.errors import EscrowError, NotFoundError
from server.escrow import EscrowEngine
from server.store import EscrowStore, UserStore
from server.verifier import TransferVerifier

logger = logging.getLogger(__name__)


# --- Request models ---

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VerifyRequest(_CamelModel):
    btc_address: str
    signature: str


class AddressesRequest(_CamelModel):
    addresses: dict[str, str]


class CreateEscrowRequest(_CamelModel):
    seller_btc_address: str | None = None
    btc_amount: str | int | float | None = None
    asset_type: str | None = None
    chain: str | None = None
    contract_address: str | None = None
    amount: str | None = None
    collection_address: str | None = None
    token_id: str | None = None
    sender_address: str | None = None
    receiver_address: str | None = None
    refund_address: str | None = None
    timeout: str | int | float | None = None


class FundingRequest(_CamelModel):
    funding_utxo: str
    funding_value: int
    prev_tx_hex: str
    change_address: str
    broadcast: bool = False


class LockRequest(FundingRequest):
    output_address: str


class RefundRequest(FundingRequest):
    current_block: int


class SubmitProofRequest(_CamelModel):
    tx_hash: str


# --- Views ---

def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


_TIME_FIELDS = {"timeout", "created_at", "updated_at"}


def escrow_view(escrow: dict) -> dict:
    view = {}
    for key, value in escrow.items():
        if key in _TIME_FIELDS:
            value = _iso(value)
        elif key == "verified_transfer" and value is not None:
            value = {to_camel(k): v for k, v in value.items()}
        view[to_camel(key)] = value
    return view


def user_view(user: dict) -> dict:
    return {
        "btcAddress": user["btc_address"],
        "addresses": user["addresses"],
        "createdAt": _iso(user["created_at"]),
        "updatedAt": _iso(user["updated_at"]),
    }


def _settlement_view(result: dict) -> dict:
    return {
        "escrow": escrow_view(result["escrow"]),
        "commitTx": result["commit_tx"],
        "spellTx": result["spell_tx"],
        "broadcast": result["broadcast"],
    }


# --- Auth dependency ---

def require_caller(request: Request) -> str:
    """Bitcoin address of the bearer-token holder, or 401."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(401, "Token required")
    address = request.app.state.auth.verify_token(token.strip())
    if not address:
        raise HTTPException(401, "Invalid token")
    return address


# --- Wiring ---

def _load_attestor_key(path: str) -> bytes:
    """Attestor identity: load from *path*, else generate (and persist to
    *path* when one is given)."""
    if path and os.path.exists(path):
        return load_ed25519_key(path)
    privkey, _ = generate_ed25519_keypair()
    if path:
        save_ed25519_key(path, privkey)
        logger.info("Generated attestation key at %s", path)
    else:
        logger.warning("No SEAL_ATTESTATION_KEY set; attestation key is ephemeral")
    return privkey


def build_services(settings: Settings) -> tuple[EscrowEngine, ChallengeAuth]:
    """Construct the engine and its collaborators from settings."""
    app_binary = b""
    if settings.app_binary_path:
        with open(settings.app_binary_path, "rb") as f:
            app_binary = f.read()
    covenant = CovenantBuilder(
        settings.app_vk, _load_attestor_key(settings.attestation_key_path),
        app_binary=app_binary, prover_api=settings.prover_api,
    )
    broadcaster = ChainBroadcaster(
        settings.bitcoin_rpc_url, settings.bitcoin_rpc_user, settings.bitcoin_rpc_password,
        network=settings.bitcoin_network,
    )
    engine = EscrowEngine(
        UserStore(settings.db_path), EscrowStore(settings.db_path),
        TransferVerifier.from_rpc_urls(settings.chain_rpc_urls),
        covenant, broadcaster, public_url=settings.public_url,
    )
    return engine, ChallengeAuth(settings.auth_secret)


# --- App factory ---

def create_app(engine: EscrowEngine | None = None, auth: ChallengeAuth | None = None,
               settings: Settings | None = None) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Missing dependencies are built from *settings* (or the environment).
    """
    app = FastAPI(title="sealcash", version="1.0")

    if engine is None or auth is None:
        built_engine, built_auth = build_services(settings or Settings.from_env())
        engine = engine or built_engine
        auth = auth or built_auth

    # Expose for testing
    app.state.engine = engine
    app.state.auth = auth

    @app.exception_handler(EscrowError)
    async def _escrow_error(request: Request, exc: EscrowError):
        status = 404 if isinstance(exc, NotFoundError) else 400
        return JSONResponse(status_code=status, content={"error": str(exc)})

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def _request_error(request: Request, exc: RequestValidationError):
        fields = ", ".join(".".join(str(p) for p in e["loc"][1:]) or "body" for e in exc.errors())
        return JSONResponse(status_code=400, content={"error": f"Invalid request: {fields}"})

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": _iso(time.time())}

    # --- Auth ---

    @app.get("/auth/challenge")
    async def challenge(btc_address: str = Query("", alias="btcAddress")):
        if not btc_address:
            raise HTTPException(400, "btcAddress required")
        return {"challenge": auth.issue_challenge(btc_address)}

    @app.post("/auth/verify")
    async def verify(req: VerifyRequest):
        if not auth.verify(req.btc_address, req.signature):
            raise HTTPException(401, "Invalid signature")
        result = engine.authenticate_user(req.btc_address)
        return {
            "token": auth.issue_token(req.btc_address),
            "user": user_view(result["user"]),
            "isNewUser": result["is_new_user"],
            "activatedInvites": result["activated_invites"],
        }

    # --- Users ---

    @app.get("/users/profile")
    async def profile(caller: str = Depends(require_caller)):
        return user_view(engine.get_user(caller))

    @app.put("/users/addresses")
    async def update_addresses(req: AddressesRequest, caller: str = Depends(require_caller)):
        return user_view(engine.update_addresses(caller, req.addresses))

    # --- Escrow ---

    @app.post("/escrow/create")
    async def create_escrow(req: CreateEscrowRequest, caller: str = Depends(require_caller)):
        result = engine.create_escrow(caller, req.model_dump())
        return {
            "escrow": escrow_view(result["escrow"]),
            "sellerRegistered": result["seller_registered"],
            "inviteLink": result["invite_link"],
        }

    @app.get("/escrow")
    async def list_escrows(role: str | None = None, status: str | None = None,
                           caller: str = Depends(require_caller)):
        return [escrow_view(e) for e in engine.list_escrows(caller, role, status)]

    @app.get("/escrow/pending-invites")
    async def pending_invites(caller: str = Depends(require_caller)):
        return [escrow_view(e) for e in engine.pending_invites(caller)]

    @app.get("/escrow/{escrow_id}")
    async def get_escrow(escrow_id: str):
        return escrow_view(engine.get_escrow(escrow_id))

    @app.post("/escrow/{escrow_id}/accept")
    async def accept(escrow_id: str, caller: str = Depends(require_caller)):
        return escrow_view(engine.accept(escrow_id, caller))

    @app.post("/escrow/{escrow_id}/reject")
    async def reject(escrow_id: str, caller: str = Depends(require_caller)):
        return escrow_view(engine.reject(escrow_id, caller))

    @app.post("/escrow/{escrow_id}/lock")
    async def lock(escrow_id: str, req: LockRequest, caller: str = Depends(require_caller)):
        result = await engine.lock_btc(
            escrow_id, caller, req.funding_utxo, req.funding_value, req.prev_tx_hex,
            req.output_address, req.change_address, broadcast=req.broadcast)
        return _settlement_view(result)

    @app.post("/escrow/{escrow_id}/submit-proof")
    async def submit_proof(escrow_id: str, req: SubmitProofRequest,
                           caller: str = Depends(require_caller)):
        result = await engine.submit_proof(escrow_id, caller, req.tx_hash)
        return {"escrow": escrow_view(result["escrow"]), "verified": result["verified"]}

    @app.post("/escrow/{escrow_id}/release")
    async def release(escrow_id: str, req: FundingRequest, caller: str = Depends(require_caller)):
        result = await engine.release_btc(
            escrow_id, caller, req.funding_utxo, req.funding_value, req.prev_tx_hex,
            req.change_address, broadcast=req.broadcast)
        return _settlement_view(result)

    @app.post("/escrow/{escrow_id}/refund")
    async def refund(escrow_id: str, req: RefundRequest, caller: str = Depends(require_caller)):
        result = await engine.refund_btc(
            escrow_id, caller, req.funding_utxo, req.funding_value, req.prev_tx_hex,
            req.change_address, req.current_block, broadcast=req.broadcast)
        return _settlement_view(result)

    return app
