"""
FastAPI REST API Module

HTTP wrapper around LedgerEngine. Every request authenticates with HTTP Basic
(account id as username, PIN as password) and gets a fresh engine bound to
that account. Error responses carry ``{"error": kind, "detail": message}``.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .config import LedgerConfig, get_config
from .credentials import CredentialHasher
from .engine import LedgerEngine
from .errors import ErrorKind, LedgerError, OperationResult, TransferFailed, describe
from .logging_config import get_logger
from .storage import AccountStore, create_store

logger = get_logger("ledger.api")

STATUS_CODES = {
    ErrorKind.INVALID_AMOUNT: 422,
    ErrorKind.INSUFFICIENT_FUNDS: 409,
    ErrorKind.RECIPIENT_NOT_FOUND: 404,
    ErrorKind.ACCOUNT_NOT_FOUND: 404,
    ErrorKind.INVALID_OPERATION: 422,
    ErrorKind.CREDENTIAL_MISMATCH: 403,
    ErrorKind.CONCURRENT_MODIFICATION: 409,
    ErrorKind.PERSISTENCE_ERROR: 503,
    ErrorKind.TRANSFER_FAILED: 503,
    ErrorKind.TRANSFER_UNRECONCILED: 500,
}


# Pydantic models for API requests
class AmountRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")


class TransferRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    recipient_id: str


class ChangeCredentialRequest(BaseModel):
    old_credential: str
    new_credential: str


def error_body(kind: ErrorKind, detail: str, **extra: Any) -> Dict[str, Any]:
    body = {"error": kind.value, "detail": detail, "message": describe(kind)}
    body.update(extra)
    return body


def result_response(result: OperationResult) -> Any:
    """Successful results as plain JSON, refusals as per-kind error responses"""
    if result.ok:
        body = {"outcome": result.outcome.value, "balance": str(result.balance)}
        if result.transfer_id:
            body["transfer_id"] = result.transfer_id
        return body
    kind = result.outcome.error_kind
    return JSONResponse(
        status_code=STATUS_CODES[kind],
        content=error_body(kind, result.message, balance=str(result.balance))
    )


def create_app(store: Optional[AccountStore] = None,
               config: Optional[LedgerConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = config or get_config()
    owns_store = store is None
    store = store or create_store(config)
    hasher = CredentialHasher.from_config(config)
    security = HTTPBasic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Close the store on shutdown when this app opened it"""
        yield
        if owns_store:
            store.close()

    app = FastAPI(
        title="Account Ledger",
        description="Deposits, withdrawals, transfers and PIN changes",
        version=__version__,
        lifespan=lifespan
    )
    app.state.store = store

    def get_engine(credentials: HTTPBasicCredentials = Depends(security)) -> LedgerEngine:
        if not LedgerEngine.authenticate(store, credentials.username, credentials.password, hasher):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid account or PIN",
                headers={"WWW-Authenticate": "Basic"}
            )
        return LedgerEngine(store, credentials.username, config=config, hasher=hasher)

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        extra = {}
        if isinstance(exc, TransferFailed):
            extra = {"transfer_id": exc.transfer_id, "reconciliation_required": not exc.reconciled}
        return JSONResponse(
            status_code=STATUS_CODES[exc.kind],
            content=error_body(exc.kind, str(exc), **extra)
        )

    @app.get("/health")
    def health():
        """Health check"""
        return {"status": "ok", "version": __version__}

    @app.get("/balance")
    def get_balance(engine: LedgerEngine = Depends(get_engine)):
        """Current balance of the authenticated account"""
        return {"account_id": engine.account_id, "balance": str(engine.balance)}

    @app.post("/deposit")
    def deposit(request: AmountRequest, engine: LedgerEngine = Depends(get_engine)):
        """Deposit funds"""
        return result_response(engine.deposit(request.amount))

    @app.post("/withdraw")
    def withdraw(request: AmountRequest, engine: LedgerEngine = Depends(get_engine)):
        """Withdraw funds"""
        return result_response(engine.withdraw(request.amount))

    @app.post("/transfer")
    def transfer(request: TransferRequest, engine: LedgerEngine = Depends(get_engine)):
        """Transfer funds to another account"""
        return result_response(engine.transfer(request.amount, request.recipient_id))

    @app.post("/credential")
    def change_credential(request: ChangeCredentialRequest,
                          engine: LedgerEngine = Depends(get_engine)):
        """Change the account PIN"""
        return result_response(engine.change_credential(request.old_credential,
                                                        request.new_credential))

    return app


def run_server(host: str = "127.0.0.1", port: int = 8090,
               config: Optional[LedgerConfig] = None) -> None:
    """Run the API server"""
    app = create_app(config=config)
    logger.info(f"Starting ledger API on {host}:{port}")
    uvicorn.run(app, host=host, port=port)
