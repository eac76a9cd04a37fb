# Prompt templates for the daily activity assistant.
# Filled with str.format, so literal braces are doubled.
from analysis import NO_PROJECT, format_duration, is_main_window, total_minutes

# Main window only, timed tasks only. Short answer.
FOCUSED_ANALYSIS_PROMPT = """Eres un asistente que analiza actividades del día con tiempo asignado.
Usuario: {first_name} ({email})
Proyecto principal asignado: "{main_project}"

TAREAS CON TIEMPO ASIGNADO para tu proyecto "{main_project}":
Total: {timed_tasks} tareas | Tiempo total: {total_time}
Tareas alta prioridad: {high_priority}

{task_lines}

PREGUNTA: "{question}"

INSTRUCCIONES ESTRICTAS DE RESPUESTA:
1. COMIENZA mencionando el proyecto principal: "Para tu proyecto '{main_project}'"
2. Enfócate SOLO en las tareas con tiempo asignado de este proyecto
3. Da prioridad principal basada en el proyecto
4. Recomendación breve relacionada con el proyecto
5. Pregunta final corta relacionada con el proyecto
6. MÁXIMO 4 renglones
7. SIN emojis
8. SIN formato especial

EJEMPLO DE RESPUESTA:
"Para tu proyecto '{main_project}', prioriza la creación de rutas API (80min, ALTA). Tienes 2h 55m disponibles para este proyecto. ¿Por cuál tarea del proyecto quieres empezar?"
"""

# Every non-excluded activity of the day, with and without time.
FULL_DAY_ANALYSIS_PROMPT = """Eres un asistente que analiza todas las actividades del día.
Usuario: {first_name} ({email})
Proyecto principal asignado: "{main_project}"

Contexto: Mostrando todas las actividades del día, incluyendo las que tienen y no tienen tiempo estimado.

Total actividades: {activity_count}
Total tareas: {total_tasks} ({timed_tasks} con tiempo, {untimed_tasks} sin tiempo)
Tiempo estimado de las tareas con tiempo: {total_time}

PROYECTO PRINCIPAL DEL DÍA (09:30-16:30):
"{main_project}"

DETALLE DE ACTIVIDADES:
{activity_details}

PREGUNTA DEL USUARIO: "{question}"

INSTRUCCIONES ESTRICTAS DE RESPUESTA:
1. COMIENZA mencionando el proyecto principal: "Tu proyecto principal es '{main_project}'"
2. Da un resumen general de todas las actividades mencionando el proyecto principal
3. Diles si están al día o menciona pendientes importantes del proyecto principal
4. Lista los puntos principales con viñetas relacionadas con el proyecto principal
5. Al final da sugerencias específicas: "Te recomiendo que empieces con [tareas del proyecto principal] porque [razón]"
6. Pregunta si están de acuerdo con la sugerencia
7. Sé natural y directo
8. NO uses emojis ni formato especial
9. Relaciona TODO con el proyecto principal
"""

EXPLANATION_VALIDATION_PROMPT = """Eres un asistente que verifica si un comentario está relacionado
con una tarea específica o con algo necesario para poder trabajar en ella hoy.

CONTEXTO:
- Actividad: "{activity_title}"
- Tarea: "{task_name}"
- Comentario del usuario: "{explanation}"

INSTRUCCIONES:
- Considera relacionado si el comentario:
  - Describe acciones sobre la tarea, o
  - Menciona algo necesario para poder avanzar en ella hoy
    (por ejemplo: herramientas, equipo, bloqueos prácticos).
- No evalúes calidad, detalle ni redacción.
- Comentarios breves o informales son aceptables.
- Solo marca como no relacionado si habla de un tema totalmente distinto
  o no se entiende ninguna intención.

RESPONDE ÚNICAMENTE EN JSON:
{{
  "esDelTema": true o false,
  "razon": "Frase corta (máx 10 palabras)",
  "sugerencia": "Pregunta corta para orientar al usuario (vacía si esDelTema es true)"
}}
"""

CHAT_PROMPT = """Eres un asistente que acompaña al usuario durante su día de trabajo.

{analysis_context}

Historial de conversación:
{history}

Nuevo mensaje: {message}
Estado: {state}

Responde de manera natural y breve, sin emojis, y haz preguntas de seguimiento relevantes."""

CHAT_HISTORY_WINDOW = 6

SUGGESTIONS_BY_STATE = {
    "inicio": [
        "Pregúntame sobre tus actividades de hoy",
        "¿Qué necesitas revisar primero?",
        "¿Quieres que te ayude a priorizar tareas?",
    ],
    "mostrando_actividades": [
        "¿Quieres profundizar en algún pendiente?",
        "¿Necesitas recomendaciones técnicas?",
        "¿Te ayudo a planificar el tiempo?",
    ],
    "esperando_respuesta": [
        "Responde a mi pregunta anterior",
        "¿Necesitas más detalles?",
        "¿Quieres cambiar de tema?",
    ],
    "dando_recomendaciones": [
        "¿Te sirvió la recomendación?",
        "¿Quieres otra perspectiva?",
        "¿Necesitas ayuda para implementarlo?",
    ],
}
DEFAULT_SUGGESTIONS = ["¿En qué más puedo ayudarte?"]
OUTSIDE_WINDOW_SUGGESTIONS = [
    "¿Quieres ver todas tus actividades del día?",
    "¿Necesitas ayuda con actividades en otros horarios?",
    "¿Quieres que te ayude a planificar estas actividades?",
]


def format_task_lines(organized: dict) -> str:
    """One bullet per timed task across all activities."""
    return "\n".join(
        f"• {p['nombre']} - {p['duracionMin']}min ({p['prioridad']}, {p['diasPendiente']}d)"
        for entry in organized.values()
        for p in entry["pendientesConTiempo"]
    )


def format_activity_details(activities: list[dict], organized: dict) -> str:
    blocks = []
    for index, activity in enumerate(activities, start=1):
        entry = organized.get(activity["id"], {})
        timed = entry.get("pendientesConTiempo", [])
        untimed = entry.get("pendientesSinTiempo", [])
        marker = " [PROYECTO PRINCIPAL]" if is_main_window(activity) else ""

        lines = [
            f"{index}. {activity.get('horaInicio')} - {activity.get('horaFin')} - {activity.get('titulo')}{marker}",
            f"   • Proyecto: {activity.get('tituloProyecto') or NO_PROJECT}",
            f"   • Estado: {activity.get('status')}",
            f"   • Total tareas: {len(timed) + len(untimed)} ({len(timed)} con tiempo, {len(untimed)} sin tiempo)",
        ]
        if timed:
            lines.append(f"   • TAREAS CON TIEMPO ({total_minutes(timed)}min):")
            for i, task in enumerate(timed, start=1):
                lines.append(f"     {i}. {task['nombre']}")
                lines.append(
                    f"        - {task['duracionMin']} min | Prioridad: {task['prioridad']} | Dias: {task['diasPendiente']}d"
                )
        if untimed:
            lines.append("   • TAREAS SIN TIEMPO:")
            for i, task in enumerate(untimed, start=1):
                lines.append(f"     {i}. {task['nombre']} ({task['diasPendiente']}d pendiente)")
        if not timed and not untimed:
            lines.append("   • Sin tareas asignadas")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def build_analysis_prompt(
    user: dict,
    email: str,
    question: str,
    main_project: str,
    activities: list[dict],
    organized: dict,
    metrics: dict,
    show_all: bool,
) -> str:
    values = {
        "first_name": user.get("firstName") or "",
        "email": email,
        "main_project": main_project,
        "question": question,
        "timed_tasks": metrics["tareasConTiempo"],
        "untimed_tasks": metrics["tareasSinTiempo"],
        "total_tasks": metrics["tareasConTiempo"] + metrics["tareasSinTiempo"],
        "high_priority": metrics["tareasAltaPrioridad"],
        "total_time": format_duration(metrics["tiempoTotalMin"]),
        "activity_count": len(activities),
    }
    if show_all:
        values["activity_details"] = format_activity_details(activities, organized)
        return FULL_DAY_ANALYSIS_PROMPT.format(**values).strip()
    values["task_lines"] = format_task_lines(organized)
    return FOCUSED_ANALYSIS_PROMPT.format(**values).strip()


def build_validation_prompt(task_name: str, explanation: str, activity_title: str) -> str:
    return EXPLANATION_VALIDATION_PROMPT.format(
        activity_title=activity_title.replace(",", " "),
        task_name=task_name,
        explanation=explanation,
    )


def _analysis_context(last_analysis: dict | None) -> str:
    if not last_analysis:
        return "Aún no se han analizado las actividades del día."
    metrics = last_analysis.get("metrics") or {}
    return (
        f"Proyecto principal: {last_analysis.get('proyectoPrincipal', '')}\n"
        f"Tareas con tiempo: {metrics.get('tareasConTiempo', 0)} | "
        f"Alta prioridad: {metrics.get('tareasAltaPrioridad', 0)} | "
        f"Tiempo estimado: {metrics.get('tiempoEstimadoTotal', '0h 0m')}\n"
        f"Último análisis: {last_analysis.get('answer', '')}"
    )


def build_chat_prompt(messages: list[dict], message: str, state: str, last_analysis: dict | None) -> str:
    recent = messages[-CHAT_HISTORY_WINDOW:]
    history = "\n".join(
        f"{'Usuario' if m.get('role') == 'usuario' else 'Asistente'}: {m.get('contenido', '')}"
        for m in recent
    ) or "(sin mensajes)"
    return CHAT_PROMPT.format(
        analysis_context=_analysis_context(last_analysis),
        history=history,
        message=message,
        state=state,
    )


def analysis_suggestions(main_project: str, untimed_tasks: int, show_all: bool) -> list[str]:
    if show_all:
        return [
            f"¿Te gustaría estimar tiempo para las {untimed_tasks} tareas sin tiempo de '{main_project}'?",
            f"¿Quieres que te ayude a priorizar las tareas de '{main_project}'?",
            "¿Necesitas ayuda para organizar tu día completo?",
        ]
    return [
        f"¿Quieres profundizar en alguna tarea de '{main_project}'?",
        f"¿Necesitas ayuda para organizar las tareas de '{main_project}' por tiempo?",
        "¿Quieres ver todas tus actividades del día?",
    ]


def suggestions_for(state: str) -> list[str]:
    return SUGGESTIONS_BY_STATE.get(state, DEFAULT_SUGGESTIONS)
