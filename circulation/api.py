import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from circulation.catalog import Catalog
from circulation.config import settings
from circulation.database import get_db_connection
from circulation.exceptions import InventoryInvariantError, TransientStorageError
from circulation.inventory import InventoryLedger
from circulation.loans import LoanLifecycle
from circulation.models import Actor, LoanError, LoanResult, LoanStatus, Role

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    LoanError.ITEM_UNAVAILABLE: 409,
    LoanError.INVALID_STATE: 409,
    LoanError.NOT_OWNER: 403,
    LoanError.FORBIDDEN: 403,
}


class Services:
    """Components bound to one database file."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or settings.database_file
        self.catalog = Catalog(self.db_file)
        self.ledger = InventoryLedger(self.db_file)
        self.loans = LoanLifecycle(self.db_file, ledger=self.ledger)


async def _sweep_overdue(services: Services, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(services.loans.recompute_overdue)
        except TransientStorageError as e:
            logger.warning(f"Overdue sweep skipped: {e}")
        except Exception:
            # The sweeper outlives any single failed run
            logger.exception("Overdue sweep failed")


def create_app(db_file: Optional[str] = None) -> FastAPI:
    services = Services(db_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = None
        if settings.overdue_sweep_interval > 0:
            sweeper = asyncio.create_task(_sweep_overdue(services, settings.overdue_sweep_interval))
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                await asyncio.gather(sweeper, return_exceptions=True)

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TransientStorageError)
    async def _transient_storage(request: Request, exc: TransientStorageError):
        return JSONResponse(status_code=503, content={"detail": "Storage busy, please retry.", "code": "transient"})

    @app.exception_handler(InventoryInvariantError)
    async def _invariant(request: Request, exc: InventoryInvariantError):
        logger.error(f"Invariant violation surfaced to API: {exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc), "code": "invariant_violation"})

    _register_routes(app, services)
    return app


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency validating the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


def get_actor(
    x_actor_id: str = Header(..., alias="X-Actor-Id"),
    x_actor_role: str = Header(..., alias="X-Actor-Role"),
) -> Actor:
    """Identity forwarded by the session provider. Trusted as given."""
    try:
        role = Role(x_actor_role.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown role: {x_actor_role}")
    return Actor(id=x_actor_id, role=role)


# --- Models ---
class ItemModel(BaseModel):
    id: str
    title: str = ""
    total_copies: int
    copies_on_loan: int
    available_copies: int


class ItemCreateModel(BaseModel):
    id: str
    title: str = ""
    total_copies: int = Field(ge=0)


class CopiesUpdateModel(BaseModel):
    total_copies: int = Field(ge=0)


class LoanModel(BaseModel):
    id: int
    item_id: str
    borrower_id: str
    borrowed_at: datetime
    due_at: datetime
    returned_at: Optional[datetime] = None
    status: LoanStatus
    fine_amount: str


class LoanCreateModel(BaseModel):
    item_id: str
    borrower_id: Optional[str] = None
    loan_period_days: Optional[int] = Field(default=None, ge=1)


class SweepResultModel(BaseModel):
    transitioned: int


def _loan_response(result: LoanResult) -> LoanModel:
    if not result.ok:
        raise HTTPException(
            status_code=_ERROR_STATUS[result.error],
            detail={"message": result.detail, "code": result.error.value},
        )
    return LoanModel(**result.loan.to_dict())


def _register_routes(app: FastAPI, services: Services) -> None:
    @app.get("/health")
    def health():
        """Lightweight health endpoint with a quick database round trip."""
        db_ok = True
        try:
            conn = get_db_connection(services.db_file)
            conn.execute("SELECT 1")
            conn.close()
        except Exception:
            db_ok = False
        return {"status": "healthy" if db_ok else "degraded", "db": db_ok}

    # --- Catalog ---
    @app.get("/items", response_model=List[ItemModel])
    def list_items():
        return [ItemModel(**item.to_dict()) for item in services.catalog.list_items()]

    @app.get("/items/{item_id}", response_model=ItemModel)
    def get_item(item_id: str):
        item = services.catalog.find_item(item_id)
        if not item:
            raise HTTPException(status_code=404, detail="Item not found.")
        return ItemModel(**item.to_dict())

    @app.post("/items", response_model=ItemModel, dependencies=[Depends(get_api_key)])
    def add_item(payload: ItemCreateModel, actor: Actor = Depends(get_actor)):
        if not actor.is_staff:
            raise HTTPException(status_code=403, detail="Only staff can manage the catalog.")
        try:
            item = services.catalog.add_item(payload.id, payload.total_copies, title=payload.title)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return ItemModel(**item.to_dict())

    @app.put("/items/{item_id}/copies", response_model=ItemModel, dependencies=[Depends(get_api_key)])
    def set_copies(item_id: str, payload: CopiesUpdateModel, actor: Actor = Depends(get_actor)):
        if not actor.is_staff:
            raise HTTPException(status_code=403, detail="Only staff can manage the catalog.")
        try:
            item = services.catalog.set_total_copies(item_id, payload.total_copies)
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if not item:
            raise HTTPException(status_code=404, detail="Item not found.")
        return ItemModel(**item.to_dict())

    @app.get("/inventory/verify", dependencies=[Depends(get_api_key)])
    def verify_inventory(item_id: Optional[str] = None):
        checked = services.ledger.verify(item_id)
        return {"checked": checked, "ok": True}

    # --- Loans ---
    @app.get("/loans", response_model=List[LoanModel])
    def list_loans(
        actor: Actor = Depends(get_actor),
        borrower_id: Optional[str] = Query(None),
        item_id: Optional[str] = Query(None),
        status: Optional[LoanStatus] = Query(None),
    ):
        # Members only ever see their own loans
        if not actor.is_staff:
            borrower_id = actor.id
        loans = services.loans.list_loans(borrower_id=borrower_id, item_id=item_id, status=status)
        return [LoanModel(**loan.to_dict()) for loan in loans]

    @app.post("/loans/overdue/recompute", response_model=SweepResultModel, dependencies=[Depends(get_api_key)])
    def recompute_overdue():
        return SweepResultModel(transitioned=services.loans.recompute_overdue())

    @app.get("/loans/{loan_id}", response_model=LoanModel)
    def get_loan(loan_id: int, actor: Actor = Depends(get_actor)):
        loan = services.loans.get_loan(loan_id)
        if not loan or (not actor.is_staff and loan.borrower_id != actor.id):
            raise HTTPException(status_code=404, detail="Loan not found.")
        return LoanModel(**loan.to_dict())

    @app.post("/loans", response_model=LoanModel, status_code=201, dependencies=[Depends(get_api_key)])
    def create_loan(payload: LoanCreateModel, actor: Actor = Depends(get_actor)):
        if payload.borrower_id and payload.borrower_id != actor.id:
            # Staff borrowing on behalf of a member
            borrower = Actor(id=payload.borrower_id, role=Role.MEMBER)
        else:
            borrower = actor
        try:
            result = services.loans.create_loan(
                payload.item_id, borrower, loan_period_days=payload.loan_period_days, initiator=actor,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return _loan_response(result)

    @app.post("/loans/{loan_id}/return-request", response_model=LoanModel, dependencies=[Depends(get_api_key)])
    def request_return(loan_id: int, actor: Actor = Depends(get_actor)):
        return _loan_response(services.loans.request_return(loan_id, actor))

    @app.post("/loans/{loan_id}/approve-return", response_model=LoanModel, dependencies=[Depends(get_api_key)])
    def approve_return(loan_id: int, actor: Actor = Depends(get_actor)):
        return _loan_response(services.loans.approve_return(loan_id, actor))

    @app.post("/loans/{loan_id}/direct-return", response_model=LoanModel, dependencies=[Depends(get_api_key)])
    def direct_return(loan_id: int, actor: Actor = Depends(get_actor)):
        return _loan_response(services.loans.direct_return(loan_id, actor))
