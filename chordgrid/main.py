from __future__ import annotations

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from chordgrid.logging_utils import (
    clear_request_context,
    configure_logging,
    current_request_id,
    log_event,
    new_request_id,
    request_elapsed_ms,
    set_request_context,
)
from chordgrid.models import (
    AnalyzeResponse,
    NotationRequest,
    ParseResult,
    RenderedMeasure,
    RenderElementsResponse,
    TransposeRequest,
)
from chordgrid.services.grid_context import AnalyzerPolicy
from chordgrid.services.grid_parser import parse, parse_for_analyzer, to_parsed_measure
from chordgrid.services.music_analyzer import MusicAnalyzer
from chordgrid.services.render_elements import render_measure
from chordgrid.services.transposer import transpose_chords

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Chord Grid")
analyzer = MusicAnalyzer(AnalyzerPolicy.from_env())


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or new_request_id()
    set_request_context(request_id=request_id, route=request.url.path, method=request.method)
    started = time.perf_counter()
    log_event(logger, "request_started")
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = request_elapsed_ms(started)
        log_event(logger, "request_completed", status_code=500, duration_ms=elapsed_ms)
        raise

    elapsed_ms = request_elapsed_ms(started)
    log_event(logger, "request_completed", status_code=response.status_code, duration_ms=elapsed_ms)
    response.headers["X-Request-ID"] = request_id
    clear_request_context()
    return response


@app.exception_handler(Exception)
async def global_exception_handler(_request: Request, exc: Exception):
    request_id = current_request_id()
    logger.exception(
        "unhandled_exception",
        extra={"event": "unhandled_exception", "request_id": request_id},
    )
    response = JSONResponse(
        status_code=500,
        content={
            "detail": "Something went wrong while processing your request. Please try again.",
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id},
    )
    clear_request_context()
    return response


def _handle_user_error(action: str, exc: ValueError) -> HTTPException:
    log_event(logger, "request_failed", level=logging.WARNING, action=action, reason=str(exc))
    return HTTPException(
        status_code=422,
        detail={
            "message": f"{action} failed. Please adjust inputs and try again.",
            "request_id": current_request_id(),
        },
    )


@app.post("/api/parse", response_model=ParseResult)
def parse_endpoint(payload: NotationRequest):
    try:
        return parse(payload.notation)
    except ValueError as exc:
        raise _handle_user_error("Grid parsing", exc) from exc


@app.post("/api/count", response_model=ParseResult)
def count_endpoint(payload: NotationRequest):
    try:
        return parse(payload.notation, counting=True)
    except ValueError as exc:
        raise _handle_user_error("Counting", exc) from exc


@app.post("/api/analyze", response_model=AnalyzeResponse)
def analyze_endpoint(payload: NotationRequest):
    try:
        parsed = parse_for_analyzer(payload.notation)
    except ValueError as exc:
        raise _handle_user_error("Beam analysis", exc) from exc
    return AnalyzeResponse(measures=[analyzer.analyze(measure) for measure in parsed.measures], errors=parsed.errors)


@app.post("/api/validate")
def validate_endpoint(payload: NotationRequest):
    try:
        result = parse(payload.notation)
    except ValueError as exc:
        raise _handle_user_error("Grid validation", exc) from exc
    errors = [error.model_dump() for error in result.errors]
    if errors:
        log_event(logger, "validation_failed", level=logging.WARNING, action="Grid validation", error_count=len(errors))
        return {
            "valid": False,
            "message": "The grid has notation errors. Please adjust it and try again.",
            "request_id": current_request_id(),
            "errors": errors,
        }
    log_event(logger, "validation_passed", action="Grid validation")
    return {"valid": True, "errors": []}


@app.post("/api/render-elements", response_model=RenderElementsResponse)
def render_elements_endpoint(payload: NotationRequest):
    try:
        result = parse(payload.notation)
    except ValueError as exc:
        raise _handle_user_error("Render preparation", exc) from exc

    rendered: list[RenderedMeasure] = []
    for index, measure in enumerate(result.measures):
        analyzed = analyzer.analyze(to_parsed_measure(measure, index, result.grid.time_signature))
        elements = render_measure(
            analyzed,
            measure,
            index,
            stems_direction=result.stems_direction,
            display_repeat_symbol=result.display_repeat_symbol,
        )
        rendered.append(RenderedMeasure(index=index, elements=elements))
    return RenderElementsResponse(measures=rendered, errors=result.errors)


@app.post("/api/transpose")
def transpose_endpoint(payload: TransposeRequest):
    chords = transpose_chords(payload.chords, payload.semitones, payload.accidental)
    log_event(logger, "chords_transposed", chord_count=len(chords), semitones=payload.semitones)
    return {"chords": chords}
