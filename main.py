import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Callable, Iterable, Literal

from fastapi import FastAPI, HTTPException, Query, Depends, Body, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from analysis_policy import AnalysisError, run_gemini_analysis
from chat_policy import ChatError, normalize_history, open_chat_stream, relay_text, select_chat_config
from credit_policy import CreditError, charge_for_scan, describe_credits, effective_credits, load_account
from health_categories import HEALTH_CATEGORIES, HealthCategoryConfig, resolve_category
from image_policy import ImagePolicyConfig, ImagePolicyError, prepare_image_for_ai
from records_store import RecordsError, SupabaseStore, create_user_store
from report_pdf import build_report_pdf
from turnstile_policy import DEFAULT_VERIFY_URL, TurnstileError, verify_turnstile_token


# ------------------------------------------------
# 1. Settings
# ------------------------------------------------
class Settings(BaseSettings):
    # --- Gemini ---
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL_NAME: str = "gemini-2.5-flash"
    GEMINI_ANALYSIS_MODEL_NAME: str = "gemini-2.5-pro"
    GEMINI_REASONING_MODEL_NAME: str = "gemini-2.5-pro"

    # --- Supabase (auth / tables / rpc) ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""

    # --- Cloudflare Turnstile ---
    TURNSTILE_SECRET_KEY: str = ""
    TURNSTILE_SITE_KEY: str = ""
    TURNSTILE_VERIFY_URL: str = DEFAULT_VERIFY_URL

    # --- misc ---
    CHAT_AUTH_REQUIRED: str = "false"  # "true"/"false"
    ANALYSIS_IMAGE_MAX_WIDTH: int = 1536
    CORS_ALLOW_ORIGINS: str = "*"  # comma separated
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("prevetscan")


def _missing_settings() -> List[str]:
    required = {
        "GEMINI_API_KEY": settings.GEMINI_API_KEY,
        "SUPABASE_URL": settings.SUPABASE_URL,
        "SUPABASE_ANON_KEY": settings.SUPABASE_ANON_KEY,
        "TURNSTILE_SECRET_KEY": settings.TURNSTILE_SECRET_KEY,
    }
    return [k for k, v in required.items() if not v]


# ------------------------------------------------
# 2. Supabase auth dependencies
# ------------------------------------------------
auth_scheme = HTTPBearer(auto_error=False)

StoreFactory = Callable[[str], SupabaseStore]


def get_store_factory() -> StoreFactory:
    def factory(access_token: str) -> SupabaseStore:
        return create_user_store(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY, access_token)

    return factory


def get_access_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> str:
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Missing Authorization Bearer token")
    return credentials.credentials


def get_store(
    token: str = Depends(get_access_token),
    factory: StoreFactory = Depends(get_store_factory),
) -> SupabaseStore:
    try:
        return factory(token)
    except RecordsError as e:
        logger.error("[Auth] Supabase client unavailable: %s", e)
        raise HTTPException(status_code=500, detail="Server config error")


def get_current_user(store: SupabaseStore = Depends(get_store)) -> Dict[str, Any]:
    """
    Authorization: Bearer <Supabase access token>
    is checked against Supabase Auth; returns {id, email}.
    """
    try:
        return store.get_user()
    except RecordsError as e:
        logger.info("[Auth] token rejected: %s", e)
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_optional_chat_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    factory: StoreFactory = Depends(get_store_factory),
) -> Optional[Dict[str, Any]]:
    if settings.CHAT_AUTH_REQUIRED.lower() != "true":
        return None
    token = get_access_token(credentials)
    return get_current_user(get_store(token, factory))


# ------------------------------------------------
# 3. Upstream call dependencies (Gemini / Turnstile)
# ------------------------------------------------
Analyzer = Callable[[bytes, HealthCategoryConfig], Dict[str, Any]]
TurnstileVerifier = Callable[[str, Optional[str]], bool]
ChatStreamer = Callable[..., Iterable[Any]]


def get_analyzer() -> Analyzer:
    def analyze(image_jpeg: bytes, category: HealthCategoryConfig) -> Dict[str, Any]:
        return run_gemini_analysis(
            image_jpeg,
            category,
            api_key=settings.GEMINI_API_KEY,
            model_name=settings.GEMINI_ANALYSIS_MODEL_NAME,
        )

    return analyze


def get_turnstile_verifier() -> TurnstileVerifier:
    def verify(token: str, remote_ip: Optional[str]) -> bool:
        return verify_turnstile_token(
            token,
            secret_key=settings.TURNSTILE_SECRET_KEY,
            remote_ip=remote_ip,
            verify_url=settings.TURNSTILE_VERIFY_URL,
        )

    return verify


def get_chat_streamer() -> ChatStreamer:
    def stream(history, message, image_jpeg, config):
        return open_chat_stream(history, message, image_jpeg, config, api_key=settings.GEMINI_API_KEY)

    return stream


def _image_config() -> ImagePolicyConfig:
    return ImagePolicyConfig(max_width=settings.ANALYSIS_IMAGE_MAX_WIDTH)


# ------------------------------------------------
# 4. DTO
# ------------------------------------------------
Species = Literal["Dog", "Cat", "Rabbit", "Bird", "Reptile", "Other"]


class AnalyzeRequest(BaseModel):
    image: Optional[str] = None
    category: Optional[str] = None
    turnstileToken: Optional[str] = None
    petId: Optional[str] = None


class ChatRequest(BaseModel):
    history: List[Any] = Field(default_factory=list)
    message: str = ""
    image: Optional[str] = None
    useDeepThinking: bool = False


class PetCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=60)
    species: Species
    breed: str = Field("", max_length=80)
    ageYears: int = Field(0, ge=0, le=40)
    ageMonths: int = Field(0, ge=0, le=11)
    weight: Optional[float] = Field(None, gt=0, le=500)

    @field_validator("name", "breed", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class PetUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=60)
    species: Optional[Species] = None
    breed: Optional[str] = Field(None, max_length=80)
    ageYears: Optional[int] = Field(None, ge=0, le=40)
    ageMonths: Optional[int] = Field(None, ge=0, le=11)
    weight: Optional[float] = Field(None, gt=0, le=500)

    @field_validator("name", "breed", mode="before")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


_PET_COLUMNS = {
    "name": "name",
    "species": "species",
    "breed": "breed",
    "ageYears": "age_years",
    "ageMonths": "age_months",
    "weight": "weight",
}

# only weight may be cleared with an explicit null
_PET_NOT_NULL = ("name", "species", "breed", "ageYears", "ageMonths")


def _pet_to_dto(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "name": row.get("name"),
        "species": row.get("species"),
        "breed": row.get("breed") or "",
        "ageYears": row.get("age_years") or 0,
        "ageMonths": row.get("age_months") or 0,
        "weight": row.get("weight"),
        "createdAt": row.get("created_at"),
    }


def _scan_row(user_id: str, pet_id: Optional[str], category: str, analysis: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "pet_id": pet_id,
        "category": category,
        "severity": analysis["severity"],
        "title": analysis["title"],
        "observations": analysis["observations"],
        "possible_causes": analysis["possibleCauses"],
        "vet_will_examine": analysis["vetWillExamine"],
        "questions_to_ask": analysis["questionsToAsk"],
        "urgency": analysis["urgency"],
        "next_steps": analysis["nextSteps"],
        "financial_forecast": analysis["financialForecast"],
        "disclaimer": analysis["disclaimer"],
    }


def _scan_to_dto(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row.get("id"),
        "petId": row.get("pet_id"),
        "category": row.get("category"),
        "severity": row.get("severity"),
        "title": row.get("title"),
        "observations": row.get("observations") or [],
        "possibleCauses": row.get("possible_causes") or [],
        "vetWillExamine": row.get("vet_will_examine") or [],
        "questionsToAsk": row.get("questions_to_ask") or [],
        "urgency": row.get("urgency") or "",
        "nextSteps": row.get("next_steps") or "",
        "financialForecast": row.get("financial_forecast") or "",
        "disclaimer": row.get("disclaimer") or "",
        "createdAt": row.get("created_at"),
    }


def _records_failure(action: str, e: Exception) -> HTTPException:
    logger.error("[Records] %s failed: %s", action, e)
    return HTTPException(status_code=500, detail=f"Failed to {action}")


# pets.id / scans.id are uuid columns; anything else cannot match a row
def _as_uuid(value: Optional[str]) -> Optional[str]:
    try:
        return str(uuid.UUID((value or "").strip()))
    except ValueError:
        return None


def _id_or_404(value: str, what: str) -> str:
    rid = _as_uuid(value)
    if rid is None:
        raise HTTPException(status_code=404, detail=f"{what} not found")
    return rid


# ------------------------------------------------
# 5. FASTAPI APP
# ------------------------------------------------
app = FastAPI(title="PreVetScan Server", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _startup():
    missing = _missing_settings()
    if missing:
        logger.warning("[Startup] missing configuration: %s (related endpoints will fail)", ", ".join(missing))
    else:
        logger.info("[Startup] configuration complete.")


@app.get("/")
def root():
    return {"status": "ok", "message": "PreVetScan Server Running"}


@app.get("/health")
@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "gemini_model": settings.GEMINI_MODEL_NAME,
        "gemini_analysis_model": settings.GEMINI_ANALYSIS_MODEL_NAME,
        "gemini_reasoning_model": settings.GEMINI_REASONING_MODEL_NAME,
        "gemini_configured": bool(settings.GEMINI_API_KEY),
        "supabase_configured": bool(settings.SUPABASE_URL and settings.SUPABASE_ANON_KEY),
        "turnstile_configured": bool(settings.TURNSTILE_SECRET_KEY),
        "chat_auth_required": settings.CHAT_AUTH_REQUIRED,
    }


@app.get("/api/config")
def public_config():
    if not settings.TURNSTILE_SITE_KEY:
        raise HTTPException(status_code=500, detail="Server config error")
    return {
        "turnstileSiteKey": settings.TURNSTILE_SITE_KEY,
        "categories": list(HEALTH_CATEGORIES.keys()),
    }


@app.get("/api/me")
def me(user: Dict[str, Any] = Depends(get_current_user)):
    return {"id": user.get("id"), "email": user.get("email")}


# ------------------------------------------------
# 6. CREDITS
# ------------------------------------------------
@app.get("/api/check-credits")
def check_credits(
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    try:
        account = load_account(store, user["id"])
    except (RecordsError, CreditError) as e:
        logger.error("[Credits] check failed for user=%s: %s", user["id"], e)
        raise HTTPException(status_code=500, detail="Failed to check credits")
    return describe_credits(account)


# ------------------------------------------------
# 7. ANALYZE (photo triage)
# ------------------------------------------------
@app.post("/api/analyze")
def analyze(
    request: Request,
    req: AnalyzeRequest = Body(...),
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
    analyzer: Analyzer = Depends(get_analyzer),
    verify_human: TurnstileVerifier = Depends(get_turnstile_verifier),
):
    uid = user["id"]

    # --- input ---
    if not (req.image or "").strip():
        raise HTTPException(status_code=400, detail="image is required")
    category = resolve_category(req.category)
    if category is None:
        raise HTTPException(status_code=400, detail="category is missing or unknown")
    token = (req.turnstileToken or "").strip()
    if not token:
        raise HTTPException(status_code=400, detail="turnstileToken is required")
    pet_id = _id_or_404(req.petId, "Pet") if (req.petId or "").strip() else None

    try:
        image_jpeg = prepare_image_for_ai(req.image, _image_config())
    except ImagePolicyError as e:
        raise HTTPException(status_code=400, detail=f"Invalid image: {e}")

    # --- credits ---
    try:
        account = load_account(store, uid)
    except (RecordsError, CreditError) as e:
        logger.error("[Credits] lookup failed for user=%s: %s", uid, e)
        raise HTTPException(status_code=500, detail="Failed to check credits")
    if effective_credits(account) <= 0:
        raise HTTPException(status_code=402, detail="No credits remaining")

    # --- pet (optional) ---
    if pet_id:
        try:
            pet = store.get_pet(uid, pet_id)
        except RecordsError as e:
            raise _records_failure("load pet", e)
        if not pet:
            raise HTTPException(status_code=404, detail="Pet not found")

    # --- human check (single-use token, spent last) ---
    remote_ip = request.client.host if request.client else None
    try:
        is_human = verify_human(token, remote_ip)
    except TurnstileError as e:
        logger.error("[Turnstile] verification unavailable: %s", e)
        raise HTTPException(status_code=500, detail="Verification failed")
    if not is_human:
        raise HTTPException(status_code=403, detail="Human verification failed")

    # --- AI ---
    try:
        analysis = analyzer(image_jpeg, category)
    except AnalysisError:
        logger.exception("[Analyze] analysis failed for user=%s", uid)
        raise HTTPException(status_code=500, detail="Analysis failed")

    # --- persist + charge ---
    try:
        saved, remaining = charge_for_scan(store, uid, _scan_row(uid, pet_id, category.label, analysis))
    except RecordsError as e:
        raise _records_failure("save scan", e)
    except CreditError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {
        **analysis,
        "scanId": saved.get("id"),
        "petId": pet_id,
        "category": category.label,
        "createdAt": saved.get("created_at"),
        "creditsRemaining": remaining,
    }


# ------------------------------------------------
# 8. CHAT (streaming relay)
# ------------------------------------------------
@app.post("/api/chat")
def chat(
    req: ChatRequest = Body(...),
    user: Optional[Dict[str, Any]] = Depends(get_optional_chat_user),
    streamer: ChatStreamer = Depends(get_chat_streamer),
):
    if not req.message.strip() and not req.image:
        raise HTTPException(status_code=400, detail="message or image is required")

    image_jpeg: Optional[bytes] = None
    if req.image:
        try:
            image_jpeg = prepare_image_for_ai(req.image, _image_config())
        except ImagePolicyError as e:
            raise HTTPException(status_code=400, detail=f"Invalid image: {e}")

    cfg = select_chat_config(
        req.useDeepThinking,
        model_name=settings.GEMINI_MODEL_NAME,
        reasoning_model_name=settings.GEMINI_REASONING_MODEL_NAME,
    )

    try:
        upstream = streamer(normalize_history(req.history), req.message, image_jpeg, cfg)
    except ChatError:
        logger.exception("[Chat] failed to open stream (model=%s)", cfg.model_name)
        raise HTTPException(status_code=500, detail="Chat failed")

    return StreamingResponse(
        relay_text(upstream),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ------------------------------------------------
# 9. PETS
# ------------------------------------------------
@app.get("/api/pets")
def list_pets(
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    try:
        rows = store.list_pets(user["id"])
    except RecordsError as e:
        raise _records_failure("list pets", e)
    return [_pet_to_dto(r) for r in rows]


@app.post("/api/pets", status_code=201)
def create_pet(
    req: PetCreate = Body(...),
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    row = {col: getattr(req, field) for field, col in _PET_COLUMNS.items()}
    row["user_id"] = user["id"]
    try:
        saved = store.insert_pet(row)
    except RecordsError as e:
        raise _records_failure("save pet", e)
    return _pet_to_dto(saved)


@app.get("/api/pets/{pet_id}")
def get_pet(
    pet_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    pet_id = _id_or_404(pet_id, "Pet")
    try:
        row = store.get_pet(user["id"], pet_id)
    except RecordsError as e:
        raise _records_failure("load pet", e)
    if not row:
        raise HTTPException(status_code=404, detail="Pet not found")
    return _pet_to_dto(row)


@app.patch("/api/pets/{pet_id}")
def update_pet(
    pet_id: str,
    req: PetUpdate = Body(...),
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    pet_id = _id_or_404(pet_id, "Pet")
    changes = req.model_dump(exclude_unset=True)
    for required in _PET_NOT_NULL:
        if required in changes and changes[required] is None:
            raise HTTPException(status_code=400, detail=f"{required} cannot be null")

    fields = {_PET_COLUMNS[k]: v for k, v in changes.items()}
    try:
        if fields:
            row = store.update_pet(user["id"], pet_id, fields)
        else:
            row = store.get_pet(user["id"], pet_id)
    except RecordsError as e:
        raise _records_failure("update pet", e)
    if not row:
        raise HTTPException(status_code=404, detail="Pet not found")
    return _pet_to_dto(row)


@app.delete("/api/pets/{pet_id}")
def delete_pet(
    pet_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    pet_id = _id_or_404(pet_id, "Pet")
    try:
        deleted = store.delete_pet(user["id"], pet_id)
    except RecordsError as e:
        raise _records_failure("delete pet", e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Pet not found")
    return {"ok": True, "deletedId": pet_id}


# ------------------------------------------------
# 10. SCANS (history / report)
# ------------------------------------------------
@app.get("/api/scans")
def list_scans(
    petId: Optional[str] = Query(None),
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    pet_filter = None
    if (petId or "").strip():
        pet_filter = _as_uuid(petId)
        if pet_filter is None:
            return []
    try:
        rows = store.list_scans(user["id"], pet_filter)
    except RecordsError as e:
        raise _records_failure("list scans", e)
    return [_scan_to_dto(r) for r in rows]


@app.get("/api/scans/{scan_id}")
def get_scan(
    scan_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    scan_id = _id_or_404(scan_id, "Scan")
    try:
        row = store.get_scan(user["id"], scan_id)
    except RecordsError as e:
        raise _records_failure("load scan", e)
    if not row:
        raise HTTPException(status_code=404, detail="Scan not found")
    return _scan_to_dto(row)


@app.delete("/api/scans/{scan_id}")
def delete_scan(
    scan_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    scan_id = _id_or_404(scan_id, "Scan")
    try:
        deleted = store.delete_scan(user["id"], scan_id)
    except RecordsError as e:
        raise _records_failure("delete scan", e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Scan not found")
    return {"ok": True, "deletedId": scan_id}


@app.get("/api/scans/{scan_id}/report.pdf")
def scan_report_pdf(
    scan_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    store: SupabaseStore = Depends(get_store),
):
    scan_id = _id_or_404(scan_id, "Scan")
    uid = user["id"]
    try:
        scan = store.get_scan(uid, scan_id)
        if not scan:
            raise HTTPException(status_code=404, detail="Scan not found")
        pet = store.get_pet(uid, scan["pet_id"]) if scan.get("pet_id") else None
    except RecordsError as e:
        raise _records_failure("load scan", e)

    pdf = build_report_pdf(scan, pet)

    stamp = (scan.get("created_at") or datetime.now(timezone.utc).isoformat())[:10]
    safe_cat = re.sub(r"[^a-zA-Z0-9_\-]", "_", scan.get("category") or "scan")
    filename = f"prevetscan_{safe_cat}_{stamp}.pdf"
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
