"""
Filtering and classification of tracker activities and their pendientes.

Everything here is pure: raw tracker payloads (plain dicts) in,
plain dicts out. The HTTP layer decides what to persist and what to
send to the LLM.
"""
import re
from datetime import datetime
from typing import Iterable, Optional

# Reference work block used for the main project and the default view
MAIN_WINDOW_START = "09:30"
MAIN_WINDOW_END = "16:30"

EXCLUDED_TITLE_MARKER = "00ftf"
EXCLUDED_STATUS = "00sec"
SHOW_ALL_TRIGGER = "otros horarios"

NO_PROJECT = "Sin proyecto"
DEFAULT_MAIN_PROJECT = "Sin proyecto específico"

PRIORITY_HIGH = "ALTA"
PRIORITY_MEDIUM = "MEDIA"
PRIORITY_LOW = "BAJA"
PRIORITY_NO_TIME = "SIN TIEMPO"

# Noise the tracker puts in activity titles
_TITLE_NOISE = ("analizador de pendientes 00act", "anfeta")
_CODE_TOKEN = re.compile(r"00\w+")


def time_to_minutes(value: Optional[str]) -> Optional[int]:
    """Convert "HH:MM" to minutes since midnight. Returns None if empty or malformed."""
    if not value:
        return None
    try:
        hours, minutes = value.strip().split(":")[:2]
        return int(hours) * 60 + int(minutes)
    except ValueError:
        return None


def time_to_decimal(value: Optional[str]) -> Optional[float]:
    """Convert "HH:MM" to decimal hours, e.g. "09:30" -> 9.5. None if empty or malformed."""
    minutes = time_to_minutes(value)
    if minutes is None:
        return None
    return minutes / 60


def classify_priority(duration_minutes: Optional[int]) -> str:
    minutes = duration_minutes or 0
    if minutes > 60:
        return PRIORITY_HIGH
    if minutes > 30:
        return PRIORITY_MEDIUM
    if minutes > 0:
        return PRIORITY_LOW
    return PRIORITY_NO_TIME


def format_duration(minutes: int) -> str:
    return f"{minutes // 60}h {minutes % 60}m"


def is_excluded(activity: dict) -> bool:
    """Activities marked 00ftf in the title or with status 00sec never reach the assistant."""
    title = (activity.get("titulo") or "").lower()
    return EXCLUDED_TITLE_MARKER in title or activity.get("status") == EXCLUDED_STATUS


def is_main_window(activity: dict) -> bool:
    start = time_to_minutes(activity.get("horaInicio"))
    end = time_to_minutes(activity.get("horaFin"))
    return (
        start is not None
        and start == time_to_minutes(MAIN_WINDOW_START)
        and end == time_to_minutes(MAIN_WINDOW_END)
    )


def wants_all_activities(question: str, show_all: bool) -> bool:
    return show_all or SHOW_ALL_TRIGGER in (question or "")


def dedupe_by_id(items: Iterable[dict], key: str = "id") -> list[dict]:
    """Drop repeated items, keeping the first occurrence of each id."""
    seen = set()
    result = []
    for item in items:
        item_id = item.get(key)
        if item_id in seen:
            continue
        seen.add(item_id)
        result.append(item)
    return result


def select_activities(raw_activities: list[dict], show_all: bool) -> list[dict]:
    """
    Pick the activities to analyse.
    Excluded activities are always dropped and duplicates collapsed.
    Unless show_all is set, only the 09:30-16:30 block is kept.
    """
    activities = dedupe_by_id(a for a in raw_activities if not is_excluded(a))
    if show_all:
        return activities
    return [a for a in activities if is_main_window(a)]


def clean_project_title(title: str) -> str:
    cleaned = title
    for noise in _TITLE_NOISE:
        cleaned = cleaned.replace(noise, "")
    cleaned = _CODE_TOKEN.sub("", cleaned)
    return " ".join(cleaned.split())


def main_project_name(activities: list[dict]) -> str:
    """
    Label for the day's main project.
    Uses the activity in the reference window, falling back to the first one given.
    Prefers the tracker's project title; otherwise derives it from the activity title.
    """
    principal = next((a for a in activities if is_main_window(a)), None)
    if principal is None and activities:
        principal = activities[0]
    if principal is None:
        return DEFAULT_MAIN_PROJECT

    project = principal.get("tituloProyecto")
    if project and project != NO_PROJECT:
        return project

    title = principal.get("titulo") or ""
    if not title:
        return DEFAULT_MAIN_PROJECT
    return clean_project_title(title) or title[:50] + "..."


def _parse_date(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def days_pending(created_at, now: Optional[datetime] = None) -> int:
    """Whole days elapsed since a pendiente was created. 0 if unknown."""
    created = _parse_date(created_at)
    if created is None:
        return 0
    now = now or datetime.now()
    return max(0, (now - created).days)


def is_assigned(pendiente: dict, email: str) -> bool:
    target = email.lower()
    return any(
        (assignee.get("name") or "").lower() == target
        for assignee in pendiente.get("assignees") or []
    )


def build_pendiente(pendiente: dict, now: Optional[datetime] = None) -> dict:
    duration = pendiente.get("duracionMin") or 0
    return {
        "id": pendiente.get("id"),
        "nombre": pendiente.get("nombre"),
        "terminada": pendiente.get("terminada"),
        "confirmada": pendiente.get("confirmada"),
        "duracionMin": duration,
        "fechaCreacion": pendiente.get("fechaCreacion"),
        "fechaFinTerminada": pendiente.get("fechaFinTerminada"),
        "diasPendiente": days_pending(pendiente.get("fechaCreacion"), now),
        "prioridad": classify_priority(duration),
    }


def _review_activities(reviews: dict) -> Iterable[dict]:
    for collaborator in (reviews or {}).get("colaboradores") or []:
        items = collaborator.get("items") or {}
        yield from items.get("actividades") or []


def organize_reviews(
    activities: list[dict],
    reviews: dict,
    email: str,
    now: Optional[datetime] = None,
) -> dict[str, dict]:
    """
    Attach the user's pendientes to each analysed activity.

    Returns {activity_id: {"actividad": ..., "pendientesConTiempo": [...],
    "pendientesSinTiempo": [...]}} in activity order. Only pendientes
    assigned to email are kept, each pendiente id at most once per activity.
    """
    organized: dict[str, dict] = {}
    for activity in activities:
        organized[activity["id"]] = {
            "actividad": {
                "id": activity["id"],
                "titulo": activity.get("titulo"),
                "horaInicio": activity.get("horaInicio"),
                "horaFin": activity.get("horaFin"),
                "status": activity.get("status"),
                "proyecto": activity.get("tituloProyecto") or NO_PROJECT,
            },
            "pendientesConTiempo": [],
            "pendientesSinTiempo": [],
        }

    seen: dict[str, set] = {activity_id: set() for activity_id in organized}
    for review_activity in _review_activities(reviews):
        entry = organized.get(review_activity.get("id"))
        if entry is None:
            continue
        known = seen[review_activity["id"]]
        for pendiente in review_activity.get("pendientes") or []:
            if not is_assigned(pendiente, email) or pendiente.get("id") in known:
                continue
            known.add(pendiente.get("id"))
            info = build_pendiente(pendiente, now)
            if info["duracionMin"] > 0:
                entry["pendientesConTiempo"].append(info)
            else:
                entry["pendientesSinTiempo"].append(info)
    return organized


def total_minutes(pendientes: list[dict]) -> int:
    return sum(p.get("duracionMin") or 0 for p in pendientes)


def count_high_priority(pendientes: list[dict]) -> int:
    return sum(1 for p in pendientes if p.get("prioridad") == PRIORITY_HIGH)


def compute_metrics(organized: dict[str, dict]) -> dict:
    with_time = [p for entry in organized.values() for p in entry["pendientesConTiempo"]]
    without_time = [p for entry in organized.values() for p in entry["pendientesSinTiempo"]]
    minutes = total_minutes(with_time)
    return {
        "totalActividades": len(organized),
        "tareasConTiempo": len(with_time),
        "tareasSinTiempo": len(without_time),
        "tareasAltaPrioridad": count_high_priority(with_time),
        "tiempoTotalMin": minutes,
        "tiempoEstimadoTotal": format_duration(minutes),
    }


def activity_summary(activity: dict) -> dict:
    start = time_to_decimal(activity.get("horaInicio"))
    end = time_to_decimal(activity.get("horaFin"))
    return {
        "id": activity.get("id"),
        "titulo": activity.get("titulo"),
        "horario": f"{activity.get('horaInicio')} - {activity.get('horaFin')}",
        "status": activity.get("status"),
        "proyecto": activity.get("tituloProyecto") or NO_PROJECT,
        "esPrincipal": is_main_window(activity),
        "duracionHoras": round(end - start, 2) if start is not None and end is not None else None,
    }


def review_summaries(organized: dict[str, dict], show_all: bool) -> list[dict]:
    """Per-activity review block sent back to the frontend. Activities without tasks are left out."""
    summaries = []
    for entry in organized.values():
        with_time = entry["pendientesConTiempo"]
        without_time = entry["pendientesSinTiempo"]
        activity = entry["actividad"]
        minutes = total_minutes(with_time)
        if show_all:
            if not with_time and not without_time:
                continue
            summaries.append({
                "actividadId": activity["id"],
                "actividadTitulo": activity["titulo"],
                "tareasConTiempo": with_time,
                "tareasSinTiempo": without_time,
                "totalTareas": len(with_time) + len(without_time),
                "tareasAltaPrioridad": count_high_priority(with_time),
                "tiempoTotal": minutes,
            })
        else:
            if not with_time:
                continue
            summaries.append({
                "actividadId": activity["id"],
                "actividadTitulo": activity["titulo"],
                "pendientesPlanificados": len(with_time),
                "pendientesAlta": count_high_priority(with_time),
                "tiempoTotal": minutes,
                "pendientes": with_time,
            })
    return summaries


def task_states(organized: dict[str, dict]) -> list[dict]:
    """Initial explanation tracking for every timed pendiente of the analysis."""
    return [
        {
            "taskId": pendiente["id"],
            "taskName": pendiente["nombre"],
            "actividadTitulo": entry["actividad"]["titulo"],
            "explicada": False,
            "validada": False,
            "explicacion": "",
            "ultimoIntento": None,
        }
        for entry in organized.values()
        for pendiente in entry["pendientesConTiempo"]
    ]


def compact_main_activity(raw_activities: list[dict]) -> Optional[dict]:
    """Short form of the 09:30-16:30 activity: title, hours, pendiente count and durations."""
    selected = next((a for a in raw_activities if is_main_window(a)), None)
    if selected is None:
        return None
    pendientes = selected.get("pendientes") or []
    title = selected.get("titulo")
    return {
        "t": title[:60] if title else "Sin título",
        "h": f"{selected.get('horaInicio')}-{selected.get('horaFin')}",
        "p": len(pendientes),
        "duraciones": [p.get("duracionMin") or 0 for p in pendientes],
    }


def revisions_by_activity(reviews: dict, email: str, activity_ids: list[str]) -> list[dict]:
    """
    Group the user's pendientes by review activity.
    An empty activity_ids list means every activity.
    """
    grouped: dict[str, dict] = {}
    for review_activity in _review_activities(reviews):
        activity_id = review_activity.get("id")
        if activity_ids and activity_id not in activity_ids:
            continue
        if activity_id in grouped:
            continue
        pendientes = [
            {
                "id": p.get("id"),
                "nombre": p.get("nombre"),
                "terminada": p.get("terminada"),
                "confirmada": p.get("confirmada"),
                "duracionMin": p.get("duracionMin"),
                "fechaCreacion": p.get("fechaCreacion"),
                "fechaFinTerminada": p.get("fechaFinTerminada"),
                "prioridad": classify_priority(p.get("duracionMin")),
            }
            for p in review_activity.get("pendientes") or []
            if is_assigned(p, email)
        ]
        if not pendientes:
            continue
        grouped[activity_id] = {
            "actividades": {"id": activity_id, "titulo": review_activity.get("titulo")},
            "pendientes": pendientes,
            "assignees": [{"name": email}],
        }
    return list(grouped.values())


def conversation_state(answer: Optional[str]) -> str:
    answer = answer or ""
    if "?" in answer:
        return "esperando_respuesta"
    lowered = answer.lower()
    if "recomiendo" in lowered or "sugiero" in lowered:
        return "dando_recomendaciones"
    return "conversando"
