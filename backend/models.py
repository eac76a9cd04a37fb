from pydantic import BaseModel, ConfigDict, Field
from typing import Optional

DEFAULT_QUESTION = "¿Qué actividades y revisiones tengo hoy? ¿Qué me recomiendas priorizar?"


class CamelModel(BaseModel):
    # Frontend sends camelCase / Spanish field names
    model_config = ConfigDict(populate_by_name=True)


class ActivitiesRequest(CamelModel):
    email: Optional[str] = None
    question: str = DEFAULT_QUESTION
    show_all: bool = Field(default=False, alias="showAll")
    new_session: bool = Field(default=False, alias="newSession")  # start a fresh, suffixed session


class EmailRequest(CamelModel):
    email: Optional[str] = None


class RevisionsRequest(CamelModel):
    email: Optional[str] = None
    activity_ids: Optional[list[str]] = Field(default=None, alias="idsAct")


class ExplanationCheck(CamelModel):
    task_name: str = Field(alias="taskName")
    explanation: str
    activity_title: str = Field(alias="activityTitle")


class ExplanationItem(CamelModel):
    task_id: Optional[str] = Field(default=None, alias="taskId")
    task_name: Optional[str] = Field(default=None, alias="taskName")
    explanation: Optional[str] = None
    confirmed: bool = False
    activity_title: Optional[str] = Field(default=None, alias="activityTitle")
    duration: Optional[int] = None  # minutes
    priority: Optional[str] = None  # ALTA | MEDIA | BAJA | SIN TIEMPO


class ExplanationsRequest(CamelModel):
    explanations: list[ExplanationItem] = []


class PendienteStateUpdate(CamelModel):
    activity_id: Optional[str] = Field(default=None, alias="actividadesId")
    pendiente_id: Optional[str] = Field(default=None, alias="IdPendientes")
    estado: Optional[str] = None  # pendiente | completado | cancelado
    motivo: Optional[str] = Field(default=None, alias="motivoNoCompletado")


class ChatRequest(CamelModel):
    message: str

