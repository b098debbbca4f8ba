import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import Settings, configure_logging, settings
from .errors import CaseError, ValidationError
from .models import Case
from .schemas import (
    Approval, CaseCreate, CaseList, CaseRead, CaseUpdate, FileUploads, Health,
    Rejection, RevisionRequest, Statistics, StatusChange, TreatmentPlanUpload,
)
from .service import CaseService, parse_status
from .storage import build_store

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("clearpro.request")

router = APIRouter()

def get_service(request: Request) -> CaseService:
    return request.app.state.service

def to_read(case: Case) -> CaseRead:
    return CaseRead.model_validate(case.model_dump())

# --- Service ---
@router.get("/")
async def index():
    return {
        "message": "ClearPro Aligner API is running",
        "endpoints": {
            "health": "/health",
            "statistics": "/statistics",
            "cases": "/cases",
            "treatmentPlan": "/cases/{id}/treatment-plan",
            "approve": "/cases/{id}/approve",
            "reject": "/cases/{id}/reject",
            "requestRevision": "/cases/{id}/request-revision",
            "files": "/cases/{id}/files",
        },
    }

@router.get("/health", response_model=Health)
async def health(response: Response, service: CaseService = Depends(get_service)):
    report = await service.health()
    if report["database"] != "Connected":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return report

@router.get("/statistics", response_model=Statistics)
async def statistics(service: CaseService = Depends(get_service)):
    return await service.statistics()

# --- Cases ---
@router.post("/cases", response_model=CaseRead, status_code=status.HTTP_201_CREATED)
async def create_case(body: CaseCreate, service: CaseService = Depends(get_service)):
    case = await service.create_case(
        body.patient,
        body.doctor,
        notes=body.notes,
        files=body.files.model_dump() if body.files else None,
    )
    return to_read(case)

@router.get("/cases", response_model=CaseList)
async def list_cases(
    status: Optional[str] = None,
    doctor: Optional[str] = None,
    service: CaseService = Depends(get_service),
):
    cases = await service.list_cases(status=status, doctor=doctor)
    return CaseList(cases=[to_read(c) for c in cases], total=len(cases), status=parse_status(status))

@router.get("/cases/status/{case_status}", response_model=CaseList)
async def list_cases_by_status(case_status: str, service: CaseService = Depends(get_service)):
    cases = await service.list_cases(status=case_status)
    return CaseList(cases=[to_read(c) for c in cases], total=len(cases), status=parse_status(case_status))

@router.get("/cases/{ref}", response_model=CaseRead)
async def get_case(ref: str, service: CaseService = Depends(get_service)):
    return to_read(await service.get_case(ref))

@router.put("/cases/{ref}", response_model=CaseRead)
async def update_case(ref: str, body: CaseUpdate, service: CaseService = Depends(get_service)):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update")
    return to_read(await service.update_case(ref, changes))

@router.delete("/cases/{ref}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_case(ref: str, service: CaseService = Depends(get_service)):
    await service.delete_case(ref)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

@router.put("/cases/{ref}/files", response_model=CaseRead)
async def record_files(ref: str, body: FileUploads, service: CaseService = Depends(get_service)):
    case = await service.record_files(ref, body.stl_files, body.prescription, body.photos)
    return to_read(case)

# --- Workflow ---
@router.patch("/cases/{ref}/status", response_model=CaseRead)
async def change_status(ref: str, body: StatusChange, service: CaseService = Depends(get_service)):
    case = await service.set_status(ref, body.status, body.actor, files=body.files, reason=body.reason, notes=body.notes)
    return to_read(case)

@router.put("/cases/{ref}/treatment-plan", response_model=CaseRead)
async def upload_treatment_plan(ref: str, body: TreatmentPlanUpload, service: CaseService = Depends(get_service)):
    return to_read(await service.upload_treatment_plan(ref, body.files, body.uploaded_by))

@router.patch("/cases/{ref}/approve", response_model=CaseRead)
async def approve(ref: str, body: Optional[Approval] = None, service: CaseService = Depends(get_service)):
    body = body or Approval()
    return to_read(await service.approve(ref, body.approved_by))

@router.patch("/cases/{ref}/reject", response_model=CaseRead)
async def reject(ref: str, body: Optional[Rejection] = None, service: CaseService = Depends(get_service)):
    body = body or Rejection()
    return to_read(await service.reject(ref, body.rejected_by, body.reason))

@router.patch("/cases/{ref}/request-revision", response_model=CaseRead)
async def request_revision(ref: str, body: Optional[RevisionRequest] = None, service: CaseService = Depends(get_service)):
    body = body or RevisionRequest()
    return to_read(await service.request_revision(ref, body.requested_by, body.notes))

def create_app(config: Settings | None = None) -> FastAPI:
    config = config or settings
    configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = build_store(config.storage_backend, config.database_url)
        await store.connect()
        app.state.service = CaseService(store, case_id_prefix=config.case_id_prefix)
        logger.info("%s started with %s storage", config.app_name, store.backend)
        yield
        await store.close()

    app = FastAPI(title=config.app_name, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        request_logger.info(
            "%s %s -> %s (%.1f ms)",
            request.method, request.url.path, response.status_code, (time.perf_counter() - started) * 1000,
        )
        return response

    @app.exception_handler(CaseError)
    async def case_error_handler(request: Request, exc: CaseError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            where = ".".join(str(part) for part in err.get("loc", ())[1:]) or "body"
            problems.append(f"{where}: {err.get('msg')}")
        return JSONResponse(status_code=400, content=ValidationError("; ".join(problems)).to_dict())

    app.include_router(router, prefix=config.api_prefix)
    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=3001)
