from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from datetime import date
from typing import Optional
import logging

import database
from analysis import (
    activity_summary,
    compact_main_activity,
    compute_metrics,
    conversation_state,
    is_excluded,
    main_project_name,
    organize_reviews,
    review_summaries,
    revisions_by_activity,
    select_activities,
    task_states,
    wants_all_activities,
)
from auth import get_current_user_id
from config import CORS_ORIGINS, LOG_LEVEL
from llm import AIProviderError, QuotaExceededError, extract_json, smart_ai_call
from models import (
    ActivitiesRequest,
    ChatRequest,
    EmailRequest,
    ExplanationCheck,
    ExplanationsRequest,
    PendienteStateUpdate,
    RevisionsRequest,
)
from prompts import (
    OUTSIDE_WINDOW_SUGGESTIONS,
    analysis_suggestions,
    build_analysis_prompt,
    build_chat_prompt,
    build_validation_prompt,
    suggestions_for,
)
from tracker_client import TrackerAPIError, TrackerClient

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

NO_ACTIVITIES_ANSWER = "No tienes actividades registradas para hoy"
OUTSIDE_WINDOW_ANSWER = "No tienes actividades programadas en el horario de 09:30 a 16:30"


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Startup
    database.init_db()
    yield
    # Shutdown
    database.close_db()

app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(QuotaExceededError)
async def quota_exceeded_handler(_request: Request, _exc: QuotaExceededError) -> JSONResponse:
    return JSONResponse(status_code=429, content={
        "success": False,
        "reason": "QUOTA_EXCEEDED",
        "message": "El asistente está temporalmente saturado.",
    })


@app.exception_handler(AIProviderError)
async def ai_provider_handler(_request: Request, _exc: AIProviderError) -> JSONResponse:
    return JSONResponse(status_code=503, content={
        "success": False,
        "message": "El asistente está muy ocupado. Intenta de nuevo en un minuto.",
    })


@app.exception_handler(TrackerAPIError)
async def tracker_error_handler(_request: Request, exc: TrackerAPIError) -> JSONResponse:
    logger.warning("Tracker API error: %s", exc)
    return JSONResponse(status_code=502, content={
        "success": False,
        "message": "Error al consultar el servicio de actividades",
    })


def get_tracker() -> TrackerClient:
    return TrackerClient()


def require_email(email: Optional[str]) -> str:
    if not email or not email.strip():
        raise HTTPException(status_code=400, detail="El email es requerido")
    return email.strip()


@app.post("/actividades-con-revisiones")
async def activities_with_revisions(
    request: ActivitiesRequest,
    user_id: str = Depends(get_current_user_id),
    tracker: TrackerClient = Depends(get_tracker),
) -> dict:
    """Analyse today's activities and pendientes and answer the user's question through the LLM."""
    email = require_email(request.email)
    user = await tracker.find_user(email)
    if not user:
        raise HTTPException(status_code=404, detail="Usuario no encontrado")

    first_of_day = database.is_first_session_of_day(user_id)
    if request.new_session:
        session_id = database.new_session_id(user_id)
    else:
        session_id = database.current_session_id(user_id)

    raw_activities = await tracker.get_activities_of_day(email)
    if not raw_activities:
        database.save_exchange(user_id, session_id, request.question, NO_ACTIVITIES_ANSWER, "texto")
        return {
            "success": True,
            "answer": NO_ACTIVITIES_ANSWER,
            "sessionId": session_id,
            "actividades": [],
            "revisionesPorActividad": {},
        }

    show_all = wants_all_activities(request.question, request.show_all)
    activities = select_activities(raw_activities, show_all)
    main_project = main_project_name(activities)

    if not activities:
        answer = NO_ACTIVITIES_ANSWER if show_all else OUTSIDE_WINDOW_ANSWER
        database.save_exchange(user_id, session_id, request.question, answer, "texto")
        return {
            "success": True,
            "answer": answer,
            "sessionId": session_id,
            "actividades": [activity_summary(a) for a in raw_activities if not is_excluded(a)],
            "revisionesPorActividad": {},
            "proyectoPrincipal": main_project,
            "sugerencias": OUTSIDE_WINDOW_SUGGESTIONS,
        }

    reviews = await tracker.get_revisions_or_empty(email, date.today().isoformat())
    organized = organize_reviews(activities, reviews, email)
    metrics = compute_metrics(organized)

    database.sync_user_activities(user_id, main_project, organized)

    prompt = build_analysis_prompt(
        user, email, request.question, main_project, activities, organized, metrics, show_all
    )
    ai_result = await smart_ai_call(prompt)

    response = {
        "success": True,
        "answer": ai_result.text,
        "provider": ai_result.provider,
        "sessionId": session_id,
        "primeraSesionDelDia": first_of_day,
        "proyectoPrincipal": main_project,
        "metrics": metrics,
        "data": {
            "actividades": [activity_summary(a) for a in activities],
            "revisionesPorActividad": review_summaries(organized, show_all),
        },
        "separadasPorTiempo": True,
        "sugerencias": analysis_suggestions(main_project, metrics["tareasSinTiempo"], show_all),
    }
    database.save_analysis(
        user_id, session_id, request.question, ai_result.text, response, task_states(organized)
    )
    return response


@app.post("/actividades")
async def main_activity(
    request: EmailRequest,
    user_id: str = Depends(get_current_user_id),
    tracker: TrackerClient = Depends(get_tracker),
) -> list[dict]:
    """Compact view of today's 09:30-16:30 activity."""
    email = require_email(request.email)
    session_id = database.current_session_id(user_id)
    database.save_message(user_id, session_id, "usuario", f"Consulta de actividades del día para {email}")

    raw_activities = await tracker.get_activities_of_day(email)
    if raw_activities is None:
        database.save_message(user_id, session_id, "bot", "No se encontraron actividades (respuesta inválida)")
        return []

    compact = compact_main_activity(raw_activities)
    if compact is None:
        database.save_message(user_id, session_id, "bot", "No hay actividades en horario 09:30-16:30")
        return []

    database.save_message(
        user_id, session_id, "bot", f'Actividad encontrada: "{compact["t"]}" con {compact["p"]} pendientes'
    )
    return [compact]


@app.post("/revisiones")
async def revisions(
    request: RevisionsRequest,
    user_id: str = Depends(get_current_user_id),
    tracker: TrackerClient = Depends(get_tracker),
) -> dict:
    """The user's pendientes for today, grouped per activity."""
    email = require_email(request.email)
    if request.activity_ids is None:
        raise HTTPException(status_code=400, detail="Parámetros inválidos")

    session_id = database.current_session_id(user_id)
    database.save_message(
        user_id, session_id, "usuario", f"Consulta de revisiones para {len(request.activity_ids)} actividades"
    )

    reviews = await tracker.get_revisions_by_date(email, date.today().isoformat())
    result = revisions_by_activity(reviews, email, request.activity_ids)
    total = sum(len(item["pendientes"]) for item in result)

    database.save_message(
        user_id, session_id, "bot",
        f"Se encontraron {len(result)} actividades con {total} pendientes totales.",
    )
    return {"success": True, "sessionId": session_id, "data": result}


@app.post("/validar-explicacion")
async def validate_explanation(
    request: ExplanationCheck,
    user_id: str = Depends(get_current_user_id),
):
    """Ask the LLM whether the user's comment is about the task, and track the result."""
    session_id = database.current_session_id(user_id)
    prompt = build_validation_prompt(request.task_name, request.explanation, request.activity_title)
    ai_result = await smart_ai_call(prompt)

    try:
        parsed = extract_json(ai_result.text)
    except ValueError:
        logger.warning("Unparseable validation answer from %s: %s", ai_result.provider, ai_result.text)
        return JSONResponse(status_code=502, content={"valida": False, "razon": "Formato de IA inválido."})

    result = {
        "valida": parsed.get("esDelTema") is True,
        "categoriaMotivo": parsed.get("categoriaMotivo") or "INSUFICIENTE",
        "razon": parsed.get("razon") or "Revisión técnica necesaria.",
        "sugerencia": parsed.get("sugerencia") or "",
    }

    database.record_explanation_attempt(
        user_id, session_id, request.task_name, request.explanation, result["valida"]
    )
    if result["valida"]:
        bot_text = f"Explicación válida: {result['razon']}"
    else:
        bot_text = f"{result['razon']}. {result['sugerencia']}".strip()
        logger.info("Validation failed. Task: %s | Reason: %s", request.task_name, result["categoriaMotivo"])
    database.save_exchange(
        user_id, session_id, f'[Explicación para "{request.task_name}"]: {request.explanation}', bot_text
    )
    return result


@app.post("/guardar-explicaciones")
def save_explanations(
    request: ExplanationsRequest,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    if not request.explanations:
        raise HTTPException(status_code=400, detail="No hay explicaciones para guardar")
    saved = database.save_explanations(user_id, request.explanations)
    return {
        "success": True,
        "message": "Pendientes guardados correctamente",
        "totalGuardadas": saved,
    }


@app.post("/confirmarEstadoPendientes")
def confirm_pendiente_state(
    request: PendienteStateUpdate,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    if not request.activity_id or not request.pendiente_id or not request.estado:
        raise HTTPException(
            status_code=400, detail="actividadesId, IdPendientes y estado son requeridos"
        )
    try:
        result = database.update_pendiente_state(
            user_id, request.activity_id, request.pendiente_id, request.estado, request.motivo
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not result["matchedCount"]:
        raise HTTPException(status_code=404, detail="Pendiente no encontrado")
    return {"success": True, "message": "Estado actualizado correctamente", "data": result}


@app.get("/siguiente-tarea")
def next_task(user_id: str = Depends(get_current_user_id)) -> dict:
    """Next task of today's session still waiting for an explanation."""
    session_id = database.current_session_id(user_id)
    return {"success": True, **database.next_pending_task(user_id, session_id)}


@app.post("/chat")
async def chat(
    request: ChatRequest,
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """Free conversation inside today's session, grounded on the last analysis."""
    session_id = database.current_session_id(user_id)
    history = database.get_history(user_id, session_id) or {}
    state = history.get("estadoConversacion") or "inicio"

    prompt = build_chat_prompt(
        history.get("mensajes") or [], request.message, state, history.get("ultimoAnalisis")
    )
    ai_result = await smart_ai_call(prompt)

    new_state = conversation_state(ai_result.text)
    database.save_exchange(
        user_id, session_id, request.message, ai_result.text,
        fields={"estadoConversacion": new_state},
    )
    return {
        "success": True,
        "answer": ai_result.text,
        "provider": ai_result.provider,
        "sessionId": session_id,
        "estado": new_state,
        "sugerencias": suggestions_for(new_state),
    }


def session_view(history: dict) -> dict:
    """
    Prepare a stored session for the frontend.
    Only activities that have review tasks are listed, and each task
    carries its explanation progress.
    """
    data = (history.get("ultimoAnalisis") or {}).get("data") or {}
    revisions_list = data.get("revisionesPorActividad")
    if revisions_list is not None and data.get("actividades") is not None:
        with_revisions = {r.get("actividadId") for r in revisions_list}
        data["actividades"] = [a for a in data["actividades"] if a.get("id") in with_revisions]

    states = {s.get("taskId"): s for s in history.get("tareasEstado") or []}
    if states:
        for revision in revisions_list or []:
            for key in ("pendientes", "tareasConTiempo", "tareasSinTiempo"):
                for task in revision.get(key) or []:
                    state = states.get(task.get("id"))
                    task["confirmada"] = bool(state and state.get("validada"))
                    task["explicacion"] = state.get("explicacion", "") if state else ""
                    task["explicada"] = bool(state and state.get("explicada"))
    return history


@app.get("/historial/sesion")
def get_session_history(
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    """A session (today's by default) plus the user's cached activities."""
    session_id = session_id or database.current_session_id(user_id)
    history = database.get_history(user_id, session_id)
    activities = database.get_user_activities(user_id)
    return {
        "success": True,
        "data": session_view(history) if history else None,
        "actividades": activities,
    }


@app.get("/historial/usuario")
def get_user_histories(
    limit: int = Query(default=10, ge=1, le=100),
    skip: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    histories, total = database.list_histories(user_id, limit, skip)
    return {
        "success": True,
        "data": histories,
        "pagination": {
            "total": total,
            "limit": limit,
            "skip": skip,
            "hasMore": skip + len(histories) < total,
        },
    }


@app.delete("/historial/sesion")
def delete_session_history(
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    user_id: str = Depends(get_current_user_id),
) -> dict:
    session_id = session_id or database.current_session_id(user_id)
    if not database.delete_history(user_id, session_id):
        raise HTTPException(status_code=404, detail="No se encontró historial para eliminar")
    return {"success": True, "message": "Historial eliminado correctamente"}


@app.post("/reporte-diario")
def create_daily_report() -> dict:
    """Rebuild today's snapshot of pendientes left undone with a reason."""
    today = date.today()
    total = database.generate_daily_report(today)
    return {"success": True, "fecha": today.isoformat(), "totalReportes": total}


@app.get("/reporte-diario")
def get_daily_report(fecha: Optional[date] = None) -> dict:
    day = fecha or date.today()
    return {"success": True, "fecha": day.isoformat(), "data": database.get_daily_report(day)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
