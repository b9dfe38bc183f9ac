"""FastAPI application for statement-ingest."""

import logging

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from statement_ingest.config import settings
from statement_ingest.db.sqlite import get_db
from statement_ingest.errors import ErrorKind
from statement_ingest.models import (
    AccountContext,
    AccountType,
    ClassifyRequest,
    ClassifyResponse,
    CreditBalanceResponse,
    DocumentFormat,
    EmploymentType,
    TaxCategory,
)
from statement_ingest.parsers.llm_client import ExtractionOrchestrator, classify_transaction
from statement_ingest.services.extraction import run_extraction
from statement_ingest.services.quota import QuotaGate

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="statement-ingest",
    description="Bank statement transaction extraction with AI fallback",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# HTTP status for each failure kind
ERROR_STATUS = {
    ErrorKind.INSUFFICIENT_CREDITS: 402,
    ErrorKind.UNPARSEABLE_DOCUMENT: 422,
    ErrorKind.NO_TRANSACTIONS_FOUND: 422,
    ErrorKind.ALL_PROVIDERS_FAILED: 502,
    ErrorKind.PROVIDER_FAILED: 502,
    ErrorKind.PROVIDER_RATE_LIMITED: 502,
    ErrorKind.MALFORMED_OUTPUT: 502,
}


def get_orchestrator() -> ExtractionOrchestrator:
    return ExtractionOrchestrator.from_settings(settings)


def get_quota_gate() -> QuotaGate:
    return QuotaGate(get_db())


@app.on_event("startup")
async def startup():
    """Initialize on startup."""
    settings.ensure_directories()
    if settings.dev_mode:
        settings.log_config()


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.post("/extract")
async def extract(
    file: UploadFile = File(...),
    format: DocumentFormat | None = Form(None),
    account_id: str = Form("anonymous"),
    employment_type: EmploymentType | None = Form(None),
    account_type: AccountType = Form(AccountType.MIXED),
    import_rules: str | None = Form(None),
    use_ai: bool = Form(False),
    orchestrator: ExtractionOrchestrator = Depends(get_orchestrator),
    quota: QuotaGate = Depends(get_quota_gate),
):
    """Extract transactions from a statement (PDF, XLSX, XLS, CSV or text)."""
    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=400, detail="Empty file")

    fmt = format or DocumentFormat.from_filename(file.filename or "", file.content_type)
    account = AccountContext(
        account_id=account_id,
        employment_type=employment_type,
        account_type=account_type,
        import_rules=import_rules,
    )

    logger.info(f"📥 Extracting {file.filename} as {fmt.value} for {account_id} (use_ai={use_ai})")
    response = await run_extraction(contents, fmt, account, use_ai=use_ai, orchestrator=orchestrator, quota=quota)

    status_code = 200
    if response.error is not None:
        status_code = ERROR_STATUS.get(ErrorKind(response.error.kind), 500)

    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


@app.get("/credits/{account_id}", response_model=CreditBalanceResponse)
async def get_credits(account_id: str, quota: QuotaGate = Depends(get_quota_gate)):
    """Current credit balance for an account."""
    return CreditBalanceResponse(account_id=account_id, credit_balance=quota.balance(account_id))


@app.post("/classify", response_model=ClassifyResponse)
async def classify(request: ClassifyRequest, orchestrator: ExtractionOrchestrator = Depends(get_orchestrator)):
    """Classify a single transaction description."""
    account = AccountContext(account_type=request.account_type, employment_type=request.employment_type)
    result = await classify_transaction(request.description, request.is_income, account, orchestrator)
    return ClassifyResponse(
        category=TaxCategory(result.category),
        confidence=result.confidence,
        reasoning=result.reasoning,
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "statement_ingest.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.dev_mode,
    )
