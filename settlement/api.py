from typing import Optional
from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .logging import configure_logging
from .models import (
    CreatePaymentRequest, EventResponse, Payment, SplitResult,
    Transfer, TransferActionRequest, TransferResponse, TransferStatus,
)
from .service import (
    SettlementService, SettlementServiceError, ConsistencyError, PersistenceError,
    EventNotFoundError, TransferNotFoundError, InvalidStateTransitionError, PermissionDeniedError,
)
from .storage import InMemoryStorage

configure_logging(settings.LOG_LEVEL)

settlement_service = SettlementService(InMemoryStorage(seed=settings.SEED_DEMO_DATA))


def get_service() -> SettlementService:
    return settlement_service


def resolve_current_member_id(
    x_principal_id: Optional[str] = Header(default=None),
    service: SettlementService = Depends(get_service),
) -> Optional[str]:
    if not x_principal_id:
        return None
    member_id = service.resolve_member_id(x_principal_id)
    if member_id is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown principal")
    return member_id


def _raise_http(e: SettlementServiceError):
    if isinstance(e, (EventNotFoundError, TransferNotFoundError)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, PermissionDeniedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, (InvalidStateTransitionError, ConsistencyError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, PersistenceError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _action_request(request: Optional[TransferActionRequest], member_id: Optional[str]) -> TransferActionRequest:
    request = request or TransferActionRequest()
    if member_id is None:
        return request
    # An authenticated principal always acts as itself
    if request.performed_by is not None and request.performed_by != member_id:
        raise PermissionDeniedError("performed_by does not match the authenticated member")
    return TransferActionRequest(performed_by=member_id)


router = APIRouter()


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}


@router.post("/events/{event_id}/payments", response_model=Payment, status_code=status.HTTP_201_CREATED, tags=["Events"])
def record_payment(
    event_id: str,
    request: CreatePaymentRequest,
    service: SettlementService = Depends(get_service),
) -> Payment:
    try:
        return service.record_payment(event_id, request)
    except SettlementServiceError as e:
        _raise_http(e)


@router.post("/events/{event_id}/split", response_model=SplitResult, tags=["Events"])
def calculate_split(event_id: str, service: SettlementService = Depends(get_service)) -> SplitResult:
    try:
        return service.calculate_split(event_id)
    except SettlementServiceError as e:
        _raise_http(e)


@router.post("/events/{event_id}/confirm", response_model=EventResponse, tags=["Events"])
def confirm_settlement(event_id: str, service: SettlementService = Depends(get_service)) -> EventResponse:
    try:
        return service.confirm_settlement(event_id)
    except SettlementServiceError as e:
        _raise_http(e)


@router.post("/events/{event_id}/cancel", response_model=EventResponse, tags=["Events"])
def cancel_settlement(event_id: str, service: SettlementService = Depends(get_service)) -> EventResponse:
    try:
        return service.cancel_settlement(event_id)
    except SettlementServiceError as e:
        _raise_http(e)


@router.get("/events/{event_id}/transfers", response_model=list[Transfer], tags=["Events"])
def list_event_transfers(event_id: str, service: SettlementService = Depends(get_service)) -> list[Transfer]:
    try:
        return service.list_event_transfers(event_id)
    except SettlementServiceError as e:
        _raise_http(e)


@router.get("/members/{member_id}/transfers", response_model=list[Transfer], tags=["Members"])
def list_member_transfers(
    member_id: str,
    status: Optional[TransferStatus] = None,
    service: SettlementService = Depends(get_service),
) -> list[Transfer]:
    return service.list_member_transfers(member_id, status)


@router.post("/transfers/{transfer_id}/sent", response_model=TransferResponse, tags=["Transfers"])
def mark_transfer_sent(
    transfer_id: str,
    request: Optional[TransferActionRequest] = Body(default=None),
    member_id: Optional[str] = Depends(resolve_current_member_id),
    service: SettlementService = Depends(get_service),
) -> TransferResponse:
    try:
        return service.mark_transfer_sent(transfer_id, _action_request(request, member_id))
    except SettlementServiceError as e:
        _raise_http(e)


@router.post("/transfers/{transfer_id}/receipt", response_model=TransferResponse, tags=["Transfers"])
def confirm_transfer_receipt(
    transfer_id: str,
    request: Optional[TransferActionRequest] = Body(default=None),
    member_id: Optional[str] = Depends(resolve_current_member_id),
    service: SettlementService = Depends(get_service),
) -> TransferResponse:
    try:
        return service.confirm_transfer_receipt(transfer_id, _action_request(request, member_id))
    except SettlementServiceError as e:
        _raise_http(e)


@router.post("/transfers/{transfer_id}/revert-payment", response_model=TransferResponse, tags=["Transfers"])
def revert_transfer_payment(
    transfer_id: str,
    request: Optional[TransferActionRequest] = Body(default=None),
    member_id: Optional[str] = Depends(resolve_current_member_id),
    service: SettlementService = Depends(get_service),
) -> TransferResponse:
    try:
        return service.revert_transfer_payment(transfer_id, _action_request(request, member_id))
    except SettlementServiceError as e:
        _raise_http(e)


@router.post("/transfers/{transfer_id}/revert-receipt", response_model=TransferResponse, tags=["Transfers"])
def revert_transfer_receipt(
    transfer_id: str,
    request: Optional[TransferActionRequest] = Body(default=None),
    member_id: Optional[str] = Depends(resolve_current_member_id),
    service: SettlementService = Depends(get_service),
) -> TransferResponse:
    try:
        return service.revert_transfer_receipt(transfer_id, _action_request(request, member_id))
    except SettlementServiceError as e:
        _raise_http(e)


app = FastAPI(
    title="Event Settlement API",
    description="Splits shared event expenses and tracks the transfers that settle them",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
