import logging
import re
from datetime import date, datetime, time, timedelta
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

from config import MONGODB_DATABASE, MONGODB_URL
from models import ExplanationItem

logger = logging.getLogger(__name__)

HISTORY_COLLECTION = "historial_bot"
ACTIVITIES_COLLECTION = "actividades"
REPORTS_COLLECTION = "reportes_pendientes"

MESSAGE_ROLES = ("usuario", "bot")
PENDIENTE_STATES = ("pendiente", "completado", "cancelado")
ACTIVITY_IN_PROGRESS = "En proceso"

_client: Optional[MongoClient] = None
_db: Optional[Database] = None


def get_db() -> Database:
    """Get or create the MongoDB connection."""
    global _client, _db
    if _db is None:
        _client = MongoClient(MONGODB_URL)
        _db = _client[MONGODB_DATABASE]
        logger.info("Connected to MongoDB: %s", MONGODB_DATABASE)
    return _db


def init_db():
    """Create the indexes the upserts rely on."""
    db = get_db()
    db[HISTORY_COLLECTION].create_index(
        [("userId", ASCENDING), ("sessionId", ASCENDING)], unique=True
    )
    db[HISTORY_COLLECTION].create_index([("userId", ASCENDING), ("updatedAt", DESCENDING)])
    db[ACTIVITIES_COLLECTION].create_index([("userId", ASCENDING)], unique=True)
    db[REPORTS_COLLECTION].create_index([("fechaReporte", ASCENDING)])


def close_db():
    global _client, _db
    if _client is not None:
        _client.close()
        logger.info("MongoDB connection closed")
    _client = None
    _db = None


# Session ids
def session_base(user_id: str, day: Optional[date] = None) -> str:
    """Per-user, per-day key: Act_{user}_{YYYY}_{MM}_{DD}."""
    day = day or date.today()
    return f"Act_{user_id}_{day:%Y_%m_%d}"


def _session_suffixes(user_id: str, day: Optional[date] = None) -> list[int]:
    """
    Suffixes of today's stored sessions for a user.
    The unsuffixed base counts as 1, "<base>_2" as 2, and so on.
    """
    base = session_base(user_id, day)
    pattern = re.compile(rf"^{re.escape(base)}(?:_(\d+))?$")
    session_ids = get_db()[HISTORY_COLLECTION].distinct(
        "sessionId", {"userId": user_id, "sessionId": {"$regex": f"^{re.escape(base)}"}}
    )
    suffixes = []
    for session_id in session_ids:
        match = pattern.match(session_id)
        if match:
            suffixes.append(int(match.group(1)) if match.group(1) else 1)
    return suffixes


def current_session_id(user_id: str, day: Optional[date] = None) -> str:
    """Latest session of the day, or the base id if the user has none yet."""
    base = session_base(user_id, day)
    suffixes = _session_suffixes(user_id, day)
    latest = max(suffixes, default=1)
    return base if latest == 1 else f"{base}_{latest}"


def new_session_id(user_id: str, day: Optional[date] = None) -> str:
    """Next unused session id of the day: base, then base_2, base_3..."""
    base = session_base(user_id, day)
    suffixes = _session_suffixes(user_id, day)
    if not suffixes:
        return base
    return f"{base}_{max(suffixes) + 1}"


def is_first_session_of_day(user_id: str, day: Optional[date] = None) -> bool:
    return not _session_suffixes(user_id, day)


# Chat history
def _message(role: str, content: str, message_type: str = "texto", analysis: Optional[dict] = None) -> dict:
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Invalid message role: {role}")
    return {
        "role": role,
        "contenido": content,
        "timestamp": datetime.now(),
        "tipoMensaje": message_type,
        "analisis": analysis,
    }


def append_messages(
    user_id: str,
    session_id: str,
    messages: list[dict],
    fields: Optional[dict] = None,
) -> dict:
    """
    Push messages to a session, creating the session document if needed.
    fields are set on the document in the same update.
    """
    now = datetime.now()
    fields = fields or {}
    on_insert = {
        "userId": user_id,
        "sessionId": session_id,
        "createdAt": now,
        "tareasEstado": [],
        "ultimoAnalisis": None,
        "estadoConversacion": "inicio",
    }
    # A field may appear in only one update operator
    on_insert = {k: v for k, v in on_insert.items() if k not in fields}
    return get_db()[HISTORY_COLLECTION].find_one_and_update(
        {"userId": user_id, "sessionId": session_id},
        {
            "$setOnInsert": on_insert,
            "$set": {**fields, "updatedAt": now},
            "$push": {"mensajes": {"$each": messages}},
        },
        projection={"_id": 0},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def save_message(
    user_id: str,
    session_id: str,
    role: str,
    content: str,
    message_type: str = "texto",
    analysis: Optional[dict] = None,
) -> dict:
    """Save one message to the session history. Returns the updated session document."""
    if not user_id or not session_id or not role or not content:
        raise ValueError("Missing data to save history message")
    return append_messages(user_id, session_id, [_message(role, content, message_type, analysis)])


def save_exchange(
    user_id: str,
    session_id: str,
    user_text: str,
    bot_text: str,
    bot_message_type: str = "respuesta_ia",
    fields: Optional[dict] = None,
) -> dict:
    """Save a user message and the bot's reply in one update."""
    return append_messages(
        user_id,
        session_id,
        [_message("usuario", user_text), _message("bot", bot_text, bot_message_type)],
        fields=fields,
    )


def save_analysis(
    user_id: str,
    session_id: str,
    question: str,
    answer: str,
    analysis: dict,
    task_states: list[dict],
) -> dict:
    """
    Record an activity analysis in the session.
    Replaces the tracked task list with task_states, keeping explanation
    progress for tasks that were already tracked.
    """
    existing = get_history(user_id, session_id) or {}
    previous = {state.get("taskId"): state for state in existing.get("tareasEstado") or []}
    merged = []
    for state in task_states:
        old = previous.get(state["taskId"])
        if old:
            state = {
                **state,
                "explicada": old.get("explicada", False),
                "validada": old.get("validada", False),
                "explicacion": old.get("explicacion", ""),
                "ultimoIntento": old.get("ultimoIntento"),
            }
        merged.append(state)

    return append_messages(
        user_id,
        session_id,
        [
            _message("usuario", question),
            _message("bot", answer, "analisis_inicial", analysis),
        ],
        fields={
            "tareasEstado": merged,
            "ultimoAnalisis": analysis,
            "estadoConversacion": "mostrando_actividades",
        },
    )


def get_history(user_id: str, session_id: str) -> Optional[dict]:
    return get_db()[HISTORY_COLLECTION].find_one(
        {"userId": user_id, "sessionId": session_id}, {"_id": 0}
    )


def list_histories(user_id: str, limit: int = 10, skip: int = 0) -> tuple[list[dict], int]:
    """A page of the user's sessions, most recently updated first, and the total count."""
    collection = get_db()[HISTORY_COLLECTION]
    histories = list(
        collection.find({"userId": user_id}, {"_id": 0})
        .sort("updatedAt", DESCENDING)
        .skip(skip)
        .limit(limit)
    )
    total = collection.count_documents({"userId": user_id})
    return histories, total


def delete_history(user_id: str, session_id: str) -> bool:
    result = get_db()[HISTORY_COLLECTION].delete_one({"userId": user_id, "sessionId": session_id})
    return result.deleted_count > 0


def record_explanation_attempt(
    user_id: str,
    session_id: str,
    task_name: str,
    explanation: str,
    valid: bool,
) -> bool:
    """
    Update the tracked state of a task after an explanation was checked.
    A valid explanation marks the task explained and validated; an
    invalid one only stamps the attempt time. Returns False when the
    session or task is unknown.
    """
    history = get_history(user_id, session_id)
    if not history:
        return False

    states = history.get("tareasEstado") or []
    state = next((s for s in states if s.get("taskName") == task_name), None)
    if state is None:
        return False

    state["ultimoIntento"] = datetime.now()
    if valid:
        state["validada"] = True
        state["explicada"] = True
        state["explicacion"] = explanation

    get_db()[HISTORY_COLLECTION].update_one(
        {"userId": user_id, "sessionId": session_id},
        {"$set": {"tareasEstado": states, "updatedAt": datetime.now()}},
    )
    return True


def next_pending_task(user_id: str, session_id: str) -> dict:
    """First tracked task of the session that still lacks a validated explanation."""
    history = get_history(user_id, session_id)
    states = (history or {}).get("tareasEstado") or []
    if not states:
        return {"hayPendientes": False, "mensaje": "No hay tareas registradas para hoy"}

    pending = next((s for s in states if not s.get("validada")), None)
    if pending is None:
        return {
            "hayPendientes": False,
            "todasCompletadas": True,
            "mensaje": "¡Todas las tareas han sido explicadas!",
        }

    done = sum(1 for s in states if s.get("validada"))
    return {
        "hayPendientes": True,
        "siguienteTarea": {
            "taskId": pending.get("taskId"),
            "taskName": pending.get("taskName"),
            "actividadTitulo": pending.get("actividadTitulo"),
        },
        "progreso": {
            "completadas": done,
            "total": len(states),
            "porcentaje": round(done / len(states) * 100),
        },
    }


# Per-user activity/pendiente cache
def _ensure_user_activities(user_id: str, project_name: str) -> dict:
    """Create the user's activity document if missing. The project name is only set on creation."""
    now = datetime.now()
    return get_db()[ACTIVITIES_COLLECTION].find_one_and_update(
        {"userId": user_id},
        {
            "$setOnInsert": {
                "userId": user_id,
                "nombre": project_name,
                "actividades": [],
                "createdAt": now,
            },
        },
        projection={"_id": 0},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def _save_user_activities(user_id: str, activities: list[dict]):
    get_db()[ACTIVITIES_COLLECTION].update_one(
        {"userId": user_id},
        {"$set": {"actividades": activities, "updatedAt": datetime.now()}},
    )


def get_user_activities(user_id: str) -> Optional[dict]:
    return get_db()[ACTIVITIES_COLLECTION].find_one({"userId": user_id}, {"_id": 0})


def sync_user_activities(user_id: str, project_name: str, organized: dict[str, dict]) -> int:
    """
    Merge analysed activities into the user's cache.

    Each activity's pendientes are replaced by its timed pendientes from
    the analysis. Descriptions and not-completed reasons the user already
    gave are kept, and so is the stored state unless the tracker marks
    the pendiente finished. Returns the number of activities written.
    """
    document = _ensure_user_activities(user_id, project_name)
    entries = document.get("actividades") or []
    by_id = {entry.get("ActividadId"): entry for entry in entries}

    for activity_id, item in organized.items():
        entry = by_id.get(activity_id)
        previous = {p.get("pendienteId"): p for p in (entry or {}).get("pendientes") or []}

        pendientes = []
        seen = set()
        for p in item["pendientesConTiempo"]:
            if p["id"] in seen:
                continue
            seen.add(p["id"])
            old = previous.get(p["id"], {})
            pendientes.append({
                "pendienteId": p["id"],
                "nombre": p.get("nombre") or "",
                "descripcion": old.get("descripcion", ""),
                "estado": "completado" if p.get("terminada") else old.get("estado", "pendiente"),
                "duracionMin": p.get("duracionMin") or 0,
                "prioridad": p.get("prioridad") or "BAJA",
                "fechaCreacion": p.get("fechaCreacion"),
                "motivoNoCompletado": old.get("motivoNoCompletado"),
            })

        if entry is None:
            entry = {"ActividadId": activity_id}
            entries.append(entry)
            by_id[activity_id] = entry
        entry["titulo"] = item["actividad"].get("titulo")
        entry["pendientes"] = pendientes
        entry["estado"] = ACTIVITY_IN_PROGRESS
        logger.info("Activity %s: %d unique pendientes", activity_id, len(pendientes))

    _save_user_activities(user_id, entries)
    return len(organized)


def update_pendiente_state(
    user_id: str,
    activity_id: str,
    pendiente_id: str,
    estado: str,
    motivo: Optional[str] = None,
) -> dict:
    """Set the state (and optional not-completed reason) of a cached pendiente."""
    if estado not in PENDIENTE_STATES:
        raise ValueError(f"Invalid pendiente state: {estado}")

    document = get_user_activities(user_id)
    if not document:
        return {"matchedCount": 0, "modifiedCount": 0}

    entries = document.get("actividades") or []
    target = None
    for entry in entries:
        if entry.get("ActividadId") != activity_id:
            continue
        target = next((p for p in entry.get("pendientes") or [] if p.get("pendienteId") == pendiente_id), None)
        if target is not None:
            break
    if target is None:
        return {"matchedCount": 0, "modifiedCount": 0}

    modified = target.get("estado") != estado or target.get("motivoNoCompletado") != motivo
    target["estado"] = estado
    target["motivoNoCompletado"] = motivo
    if modified:
        _save_user_activities(user_id, entries)
    return {"matchedCount": 1, "modifiedCount": int(modified)}


def save_explanations(user_id: str, explanations: list[ExplanationItem]) -> int:
    """
    Store the user's explanations as pendiente descriptions.
    The pendiente is looked up by id, its activity by id or title; both are
    created when missing. Incomplete items are skipped. Returns how many
    were saved.
    """
    complete = [
        exp for exp in explanations
        if exp.task_id and exp.task_name and exp.explanation and exp.activity_title
    ]
    if not complete:
        return 0

    document = _ensure_user_activities(user_id, complete[0].activity_title)
    entries = document.get("actividades") or []

    for exp in complete:
        entry = next(
            (e for e in entries if any(p.get("pendienteId") == exp.task_id for p in e.get("pendientes") or [])),
            None,
        )
        if entry is None:
            entry = next((e for e in entries if e.get("titulo") == exp.activity_title), None)
        if entry is None:
            entry = {
                "ActividadId": None,
                "titulo": exp.activity_title,
                "pendientes": [],
                "estado": ACTIVITY_IN_PROGRESS,
            }
            entries.append(entry)

        pendientes = entry.setdefault("pendientes", [])
        pendiente = next((p for p in pendientes if p.get("pendienteId") == exp.task_id), None)
        if pendiente is None:
            pendientes.append({
                "pendienteId": exp.task_id,
                "nombre": exp.task_name,
                "descripcion": exp.explanation,
                "estado": "completado" if exp.confirmed else "pendiente",
                "duracionMin": exp.duration if exp.duration is not None else 0,
                "prioridad": exp.priority or "BAJA",
                "fechaCreacion": datetime.now(),
                "motivoNoCompletado": None,
            })
        else:
            pendiente["descripcion"] = exp.explanation
            pendiente["estado"] = "completado" if exp.confirmed else "pendiente"
            if exp.duration is not None:
                pendiente["duracionMin"] = exp.duration
            if exp.priority:
                pendiente["prioridad"] = exp.priority

    _save_user_activities(user_id, entries)
    return len(complete)


# Daily report
def generate_daily_report(day: Optional[date] = None) -> int:
    """
    Snapshot every not-completed pendiente that has a reason recorded.
    Rebuilds the given day's report from scratch. Returns the row count.
    """
    day = day or date.today()
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)
    db = get_db()

    db[REPORTS_COLLECTION].delete_many({"fechaReporte": {"$gte": start, "$lt": end}})

    rows = []
    for document in db[ACTIVITIES_COLLECTION].find({}, {"_id": 0}):
        for activity in document.get("actividades") or []:
            for pendiente in activity.get("pendientes") or []:
                if pendiente.get("estado") == "completado" or not pendiente.get("motivoNoCompletado"):
                    continue
                rows.append({
                    "userId": document.get("userId"),
                    "proyectoNombre": document.get("nombre"),
                    "actividadId": activity.get("ActividadId"),
                    "actividadTitulo": activity.get("titulo"),
                    "pendienteId": pendiente.get("pendienteId"),
                    "pendienteNombre": pendiente.get("nombre"),
                    "estadoFinal": pendiente.get("estado"),
                    "motivoNoCompletado": pendiente.get("motivoNoCompletado"),
                    "prioridad": pendiente.get("prioridad"),
                    "duracionMin": pendiente.get("duracionMin"),
                    "fechaReporte": start,
                })

    if rows:
        db[REPORTS_COLLECTION].insert_many(rows)
    logger.info("Daily report %s: %d rows", day.isoformat(), len(rows))
    return len(rows)


def get_daily_report(day: Optional[date] = None) -> list[dict]:
    day = day or date.today()
    start = datetime.combine(day, time.min)
    return list(
        get_db()[REPORTS_COLLECTION].find(
            {"fechaReporte": {"$gte": start, "$lt": start + timedelta(days=1)}}, {"_id": 0}
        )
    )
