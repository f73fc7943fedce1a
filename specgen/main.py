import logging
import os
import secrets
import time
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from specgen import llm_client, mockups
from specgen.llm_client import UpstreamError, resolve_api_key
from specgen.llm_prompts import fix_diagram_instructions, mindmap_instructions
from specgen.meta import DEFAULT_LOCALE, now_iso
from specgen.orchestrator import accept_any, drawflow_check, retry_with_repair, stage_check
from specgen.validators import SCHEMA_VERSION

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

MINDMAP_TEMPERATURE = 0.7


class JsonResponse(JSONResponse):
    media_type = "application/json; charset=utf-8"


app = FastAPI(title="specgen", default_response_class=JsonResponse)


class ApiError(Exception):
    """Raised by handlers; rendered as the standard error envelope."""

    def __init__(self, status: int, code: str, message: str, issues: Optional[list] = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.issues = issues


def _cid(request: Request) -> str:
    cid = getattr(request.state, "correlation_id", None)
    if not cid:
        cid = secrets.token_hex(8)
        request.state.correlation_id = cid
    return cid


def _error_response(status: int, code: str, message: str, cid: str, issues: Optional[list] = None) -> JsonResponse:
    err: Dict[str, Any] = {"code": code, "message": message}
    if issues is not None:
        err["issues"] = issues
    return JsonResponse(status_code=status, content={"error": err, "correlationId": cid})


def _apply_cors(request: Request, response: Response) -> Response:
    response.headers["Access-Control-Allow-Origin"] = request.headers.get("origin") or "*"
    response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
    response.headers["Vary"] = "Origin"
    return response


@app.middleware("http")
async def correlation_and_cors(request: Request, call_next):
    cid = secrets.token_hex(8)
    start = time.time()
    request.state.correlation_id = cid
    response = None
    try:
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            try:
                response = await call_next(request)
            except Exception as exc:
                log.exception("cid=%s unhandled error", cid)
                response = _error_response(500, "SERVER_ERROR", str(exc), cid)
        return _apply_cors(request, response)
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "cid=%s method=%s path=%s status=%s dur_ms=%d",
            cid, request.method, request.url.path, getattr(response, "status_code", "?"), dur_ms,
        )


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return _error_response(exc.status, exc.code, exc.message, _cid(request), exc.issues)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return _error_response(404, "NOT_FOUND", "Unknown route", _cid(request))
    if exc.status_code == 405:
        return _error_response(405, "METHOD_NOT_ALLOWED", "Method not allowed for this route", _cid(request))
    return _error_response(exc.status_code, "HTTP_ERROR", str(exc.detail), _cid(request))


# ---------- request bodies ----------

class PromptIn(BaseModel):
    system: str = Field(min_length=1)
    developer: str = Field(min_length=1)
    user: str = Field(min_length=1)


class GenerateRequest(BaseModel):
    stage: str = Field(min_length=1)
    locale: str = DEFAULT_LOCALE
    prompt: PromptIn

    @field_validator("locale", mode="before")
    @classmethod
    def _default_locale(cls, v: Any) -> Any:
        return v or DEFAULT_LOCALE


class FixDiagramRequest(BaseModel):
    diagramId: str = Field(min_length=1)
    diagramType: str = Field(min_length=1)
    brokenCode: str = Field(min_length=1)
    technicalSpec: Any = None
    overview: Any = None


class SpecContext(BaseModel):
    overview: Any
    design: Any
    technical: Any = None

    @field_validator("overview", "design")
    @classmethod
    def _present(cls, v: Any) -> Any:
        if not v:
            raise ValueError("required")
        return v


class MockupsRequest(SpecContext):
    useMockData: bool = False


class SingleMockupRequest(MockupsRequest):
    screen: Dict[str, Any]

    @field_validator("screen")
    @classmethod
    def _screen_present(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        if not v:
            raise ValueError("required")
        return v


class MindMapRequest(BaseModel):
    overview: Any
    technical: Any

    @field_validator("overview", "technical")
    @classmethod
    def _present(cls, v: Any) -> Any:
        if not v:
            raise ValueError("required")
        return v


M = TypeVar("M", bound=BaseModel)


async def _read_body(request: Request, model: Type[M], usage: str) -> M:
    try:
        raw = await request.json()
    except ValueError:
        raise ApiError(400, "BAD_REQUEST", "Invalid JSON in request body")
    try:
        return model.model_validate(raw)
    except ValidationError:
        raise ApiError(400, "BAD_REQUEST", usage)


def _api_key(request: Request) -> str:
    key = resolve_api_key(request.scope.get("env"))
    if not key:
        log.error("cid=%s OPENAI_API_KEY not configured", _cid(request))
        raise ApiError(500, "SERVER_ERROR", "OPENAI_API_KEY not configured")
    return key


def _corrected_code(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("content") or value.get("text") or value
    return value


# ---------- routes ----------

@app.api_route("/health", methods=["GET", "POST"])
async def health(request: Request):
    key = resolve_api_key(request.scope.get("env"))
    if not key:
        return JsonResponse(
            status_code=500,
            content=llm_client.health_body("error", error="OPENAI_API_KEY not configured"),
        )
    return await llm_client.probe(key)


@app.get("/selftest")
async def selftest(request: Request):
    key = resolve_api_key(request.scope.get("env"))
    if not key:
        return JsonResponse(status_code=500, content={"error": "OPENAI_API_KEY not configured"})
    try:
        upstream = await llm_client.selftest(key)
    except Exception as exc:
        log.warning("selftest: upstream request failed: %r", exc)
        return JsonResponse(status_code=500, content={"error": str(exc)})
    return Response(content=upstream.content, status_code=upstream.status_code, media_type="application/json")


@app.post("/generate")
async def generate(request: Request):
    cid = _cid(request)
    req = await _read_body(request, GenerateRequest, "Expected { stage, prompt:{system,developer,user} }")
    key = _api_key(request)

    try:
        outcome = await retry_with_repair(
            req.stage, req.prompt.model_dump(), stage_check(req.locale), api_key=key
        )
    except UpstreamError as exc:
        raise ApiError(502, "OPENAI_UPSTREAM_ERROR", str(exc))

    if not outcome.ok:
        log.info("cid=%s generate stage=%s failed issues=%d", cid, req.stage, len(outcome.issues))
        raise ApiError(422, "INVALID_MODEL_OUTPUT", "Validation failed", [i["message"] for i in outcome.issues])
    return {**outcome.document, "correlationId": cid}


@app.post("/fix-diagram")
async def fix_diagram(request: Request):
    cid = _cid(request)
    req = await _read_body(request, FixDiagramRequest, "Expected { diagramId, diagramType, brokenCode }")
    key = _api_key(request)

    instructions = fix_diagram_instructions(req.diagramType, req.brokenCode, req.technicalSpec, req.overview)
    try:
        outcome = await retry_with_repair("rawText", instructions, accept_any, api_key=key, expect_json=False)
    except UpstreamError as exc:
        raise ApiError(502, "OPENAI_UPSTREAM_ERROR", str(exc))

    if not outcome.ok:
        raise ApiError(422, "INVALID_MODEL_OUTPUT", "Validation failed", [i["message"] for i in outcome.issues])
    return {"diagramId": req.diagramId, "correctedCode": _corrected_code(outcome.document), "correlationId": cid}


@app.post("/analyze-screens")
async def analyze_screens(request: Request):
    cid = _cid(request)
    req = await _read_body(request, SpecContext, "Expected { overview, design, technical (optional) }")
    key = _api_key(request)

    try:
        screens = await mockups.analyze_screens(req.overview, req.design, req.technical, api_key=key)
    except mockups.MockupError as exc:
        raise ApiError(500, exc.code, exc.message)
    return {
        "screens": screens,
        "meta": {
            "version": SCHEMA_VERSION,
            "generatedAt": now_iso(),
            "totalScreens": len(screens),
            "correlationId": cid,
        },
    }


@app.post("/generate-single-mockup")
async def generate_single_mockup(request: Request):
    cid = _cid(request)
    req = await _read_body(
        request,
        SingleMockupRequest,
        "Expected { overview, design, screen, technical (optional), useMockData (optional) }",
    )
    key = _api_key(request)

    order = req.screen.get("order")
    index = order - 1 if isinstance(order, int) and order > 0 else 0
    try:
        mockup = await mockups.generate_mockup(
            req.screen, index, req.overview, req.design, req.technical, req.useMockData, api_key=key
        )
    except Exception as exc:
        log.warning("cid=%s single mockup failed for screen %r: %r", cid, req.screen.get("name"), exc)
        raise ApiError(500, "GENERATION_FAILED", f"Failed to generate mockup: {exc}")
    return {
        "mockup": mockup,
        "meta": {
            "version": SCHEMA_VERSION,
            "generatedAt": now_iso(),
            "useMockData": req.useMockData,
            "correlationId": cid,
        },
    }


@app.post("/generate-mockups")
async def generate_mockups(request: Request):
    cid = _cid(request)
    req = await _read_body(
        request,
        MockupsRequest,
        "Expected { overview, design, technical (optional), useMockData (optional) }",
    )
    key = _api_key(request)

    try:
        screens = await mockups.analyze_screens(req.overview, req.design, req.technical, api_key=key)
    except mockups.MockupError as exc:
        raise ApiError(500, exc.code, exc.message)

    items = await mockups.generate_mockups(
        screens, req.overview, req.design, req.technical, req.useMockData, api_key=key
    )
    return {
        "mockups": items,
        "meta": {
            "version": SCHEMA_VERSION,
            "generatedAt": now_iso(),
            "totalScreens": len(items),
            "requestedScreens": len(screens),
            "useMockData": req.useMockData,
            "correlationId": cid,
        },
    }


@app.post("/generate-mindmap")
async def generate_mindmap(request: Request):
    cid = _cid(request)
    req = await _read_body(request, MindMapRequest, "overview and technical are required")
    key = _api_key(request)

    try:
        outcome = await retry_with_repair(
            "mindmap",
            mindmap_instructions(req.overview, req.technical),
            drawflow_check,
            api_key=key,
            temperature=MINDMAP_TEMPERATURE,
        )
    except UpstreamError as exc:
        raise ApiError(502, "OPENAI_UPSTREAM_ERROR", str(exc))

    if not outcome.ok:
        raise ApiError(422, "INVALID_MODEL_OUTPUT", "Invalid mind map structure", [i["message"] for i in outcome.issues])
    return {"success": True, "mindMap": outcome.document, "correlationId": cid}
