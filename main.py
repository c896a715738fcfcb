import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import sessionmaker

from banking import BankingClient
from errors import (
    AuthenticationError,
    NotFoundError,
    PersistenceError,
    UpstreamError,
    ValidationError,
)
from identity import resolve_identity
from models import Budget
from notifications import ConnectionRegistry, NotificationDispatcher, WebSocketConnection
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetProgressOut,
    IngestRequest,
    LedgerAmendIn,
    LedgerEntryIn,
    LedgerEntryOut,
    NotificationOut,
    SyncRequest,
)
from services import (
    BudgetEvaluator,
    BudgetService,
    IngestResult,
    LedgerService,
    ReportService,
    TransactionIngestor,
)
from store import LedgerStore
from summaries import PeriodicSummarizer

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    store: LedgerStore
    registry: ConnectionRegistry
    dispatcher: NotificationDispatcher
    evaluator: BudgetEvaluator
    ingestor: TransactionIngestor
    ledger: LedgerService
    budgets: BudgetService
    reports: ReportService
    summarizer: PeriodicSummarizer


def build_services(
    session_factory: Optional[sessionmaker] = None,
    banking: Optional[BankingClient] = None,
) -> AppServices:
    store = LedgerStore(session_factory)
    registry = ConnectionRegistry()
    dispatcher = NotificationDispatcher(store, registry)
    evaluator = BudgetEvaluator(store, dispatcher)
    return AppServices(
        store=store,
        registry=registry,
        dispatcher=dispatcher,
        evaluator=evaluator,
        ingestor=TransactionIngestor(store, evaluator, banking or BankingClient()),
        ledger=LedgerService(store, evaluator),
        budgets=BudgetService(store),
        reports=ReportService(store),
        summarizer=PeriodicSummarizer(store, dispatcher),
    )


app = FastAPI(title="Ledger Alerts")
services = build_services()
scheduler_manager = SchedulerManager(services.summarizer)
bearer = HTTPBearer(auto_error=False)


def get_services() -> AppServices:
    return services


def current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> str:
    try:
        return resolve_identity(credentials.credentials if credentials else "")
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def ingest_payload(result: IngestResult) -> dict[str, object]:
    return {
        "inserted": len(result.inserted),
        "duplicates": result.duplicates,
        "alerts": result.alerts,
        "errors": [{"index": e.index, "message": e.message} for e in result.errors],
        "alert_failures": result.alert_failures,
    }


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error(f"persistence_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.post("/api/sync")
def api_sync(
    data: SyncRequest,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    try:
        result = svc.ingestor.sync(user_id, data.connection_token)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except UpstreamError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ingest_payload(result)


@app.post("/api/ingest")
def api_ingest(
    data: IngestRequest,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    return ingest_payload(svc.ingestor.ingest(user_id, data.items))


@app.get("/api/ledger")
def api_ledger(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    category: Optional[str] = None,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    period = period_from_request(request)
    offset = (page - 1) * limit
    items = svc.ledger.list(
        user_id,
        period,
        category=category,
        limit=limit + 1,
        offset=offset,
    )
    has_more = len(items) > limit
    return {
        "items": [
            LedgerEntryOut.model_validate(entry).model_dump(mode="json")
            for entry in items[:limit]
        ],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/ledger", status_code=201)
def api_add_entry(
    data: LedgerEntryIn,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    try:
        entry, _evaluation = svc.ledger.add_manual(user_id, data)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return LedgerEntryOut.model_validate(entry)


@app.patch("/api/ledger/{entry_id}")
def api_amend_entry(
    entry_id: int,
    data: LedgerAmendIn,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    try:
        entry = svc.ledger.amend(user_id, entry_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return LedgerEntryOut.model_validate(entry)


def budget_payload(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "category": budget.category,
        "limit_cents": budget.limit_cents,
        "notified_for_current_period": budget.notified_for_current_period,
        "period_key": budget.period_key,
    }


@app.get("/api/budgets")
def api_budgets(
    category: Optional[str] = None,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    return [budget_payload(b) for b in svc.budgets.list(user_id, category=category)]


@app.post("/api/budgets", status_code=201)
def api_upsert_budget(
    data: BudgetIn,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    try:
        budget = svc.budgets.upsert(user_id, data)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": budget.id, "category": budget.category, "limit_cents": budget.limit_cents}


@app.put("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int,
    data: BudgetIn,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    try:
        budget = svc.budgets.update(user_id, budget_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return budget_payload(budget)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(
    budget_id: int,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    try:
        svc.budgets.delete(user_id, budget_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/budgets/progress")
def api_budget_progress(
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    return [
        BudgetProgressOut(
            id=row.id,
            category=row.category,
            limit_cents=row.limit_cents,
            spent_cents=row.spent_cents,
            remaining_cents=row.remaining_cents,
            notified_for_current_period=row.notified_for_current_period,
        )
        for row in svc.budgets.progress(user_id)
    ]


@app.get("/api/notifications")
def api_notifications(
    request: Request,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    unread_only = request.query_params.get("unread") in ("1", "true")
    return [
        NotificationOut.model_validate(n)
        for n in svc.dispatcher.list_for_user(user_id, unread_only=unread_only)
    ]


@app.post("/api/notifications/{notification_id}/read", status_code=204)
def api_mark_notification_read(
    notification_id: int,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    try:
        svc.dispatcher.mark_read(user_id, notification_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/api/reports/category-summary")
def api_category_summary(
    request: Request,
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    period = period_from_request(request)
    return svc.reports.category_summary(user_id, period)


@app.get("/api/reports/monthly-trends")
def api_monthly_trends(
    user_id: str = Depends(current_user_id),
    svc: AppServices = Depends(get_services),
):
    return svc.reports.monthly_trends(user_id)


@app.websocket("/ws/notifications")
async def notifications_socket(
    websocket: WebSocket,
    token: str = "",
    svc: AppServices = Depends(get_services),
):
    try:
        user_id = resolve_identity(token)
    except AuthenticationError:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    connection = WebSocketConnection(websocket, asyncio.get_running_loop())
    svc.registry.add(user_id, connection)
    logger.info(f"connection_opened: user={user_id}")
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        svc.registry.remove(user_id, connection)
        logger.info(f"connection_closed: user={user_id}")


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
