"""
Tests for FastAPI endpoints in main.py.
The tracker API is served by an httpx.MockTransport and the LLM call is
replaced with the fake_ai fixture.
"""
import pytest
import sys
import os
from types import SimpleNamespace

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
import llm
import main
from llm import AIProviderError, AIService, QuotaExceededError
from conftest import TEST_EMAIL, TEST_USER_ID, make_activity, make_pendiente, make_reviews


def seed_day(tracker_data):
    """One activity in the main window with two timed tasks and one untimed, plus an afternoon activity."""
    tracker_data["activities"] = [
        make_activity("a1", "Backend pagos"),
        make_activity("a2", "Soporte", "17:00", "18:00", tituloProyecto="Mesa de ayuda"),
        make_activity("a3", "Comida 00ftf"),
    ]
    tracker_data["reviews"] = make_reviews(
        {
            "id": "a1",
            "titulo": "Backend pagos",
            "pendientes": [
                make_pendiente("p1", "API de cobros", 90),
                make_pendiente("p2", "Pruebas", 20),
                make_pendiente("p3", "Documentar", 0),
            ],
        },
        {"id": "a2", "titulo": "Soporte", "pendientes": [make_pendiente("p4", "Tickets", 45)]},
    )


def today_session():
    return database.session_base(TEST_USER_ID)


class TestAuth:
    """Every endpoint needs the session cookie."""

    def test_missing_cookie(self, app_client):
        app_client.cookies.clear()
        response = app_client.get("/siguiente-tarea")
        assert response.status_code == 401
        assert response.json()["detail"] == "No autenticado"

    def test_invalid_token(self, app_client):
        app_client.cookies.set("token", "not-a-jwt")
        response = app_client.get("/siguiente-tarea")
        assert response.status_code == 401
        assert response.json()["detail"] == "Token inválido"


class TestActivitiesWithRevisions:
    """Tests for POST /actividades-con-revisiones."""

    def test_email_required(self, app_client):
        response = app_client.post("/actividades-con-revisiones", json={})
        assert response.status_code == 400

    def test_unknown_user(self, app_client):
        response = app_client.post("/actividades-con-revisiones", json={"email": "nadie@example.com"})
        assert response.status_code == 404
        assert response.json()["detail"] == "Usuario no encontrado"

    def test_no_activities(self, app_client, fake_ai):
        response = app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})

        assert response.status_code == 200
        assert response.json()["answer"] == "No tienes actividades registradas para hoy"
        assert fake_ai == []
        assert len(database.get_history(TEST_USER_ID, today_session())["mensajes"]) == 2

    def test_nothing_in_main_window(self, app_client, tracker_data, fake_ai):
        tracker_data["activities"] = [make_activity("a2", "Soporte", "17:00", "18:00")]

        response = app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})
        body = response.json()

        assert body["answer"] == "No tienes actividades programadas en el horario de 09:30 a 16:30"
        assert [a["id"] for a in body["actividades"]] == ["a2"]
        assert len(body["sugerencias"]) == 3
        assert fake_ai == []

    def test_focused_analysis(self, app_client, tracker_data, fake_ai):
        seed_day(tracker_data)

        response = app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})
        body = response.json()

        assert response.status_code == 200
        assert body["answer"] == fake_ai.answer
        assert body["provider"] == "Gemini"
        assert body["sessionId"] == today_session()
        assert body["proyectoPrincipal"] == "Portal Clientes"
        assert body["metrics"]["tareasConTiempo"] == 2
        assert body["metrics"]["tareasAltaPrioridad"] == 1
        assert body["metrics"]["tiempoEstimadoTotal"] == "1h 50m"
        assert [a["id"] for a in body["data"]["actividades"]] == ["a1"]
        assert body["data"]["revisionesPorActividad"][0]["pendientesPlanificados"] == 2

        prompt = fake_ai[0]
        assert "Para tu proyecto 'Portal Clientes'" in prompt
        assert "API de cobros - 90min (ALTA" in prompt
        assert "Documentar" not in prompt

    def test_analysis_persists_session_and_cache(self, app_client, tracker_data, fake_ai):
        seed_day(tracker_data)
        app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})

        history = database.get_history(TEST_USER_ID, today_session())
        assert history["estadoConversacion"] == "mostrando_actividades"
        assert [s["taskId"] for s in history["tareasEstado"]] == ["p1", "p2"]

        cached = database.get_user_activities(TEST_USER_ID)
        assert cached["nombre"] == "Portal Clientes"
        assert [p["pendienteId"] for p in cached["actividades"][0]["pendientes"]] == ["p1", "p2"]

    def test_show_all_activities(self, app_client, tracker_data, fake_ai):
        seed_day(tracker_data)

        response = app_client.post(
            "/actividades-con-revisiones",
            json={"email": TEST_EMAIL, "question": "¿Qué tengo en otros horarios?"},
        )
        body = response.json()

        assert [a["id"] for a in body["data"]["actividades"]] == ["a1", "a2"]
        assert body["metrics"]["tareasSinTiempo"] == 1
        assert "Tu proyecto principal es 'Portal Clientes'" in fake_ai[0]
        assert "[PROYECTO PRINCIPAL]" in fake_ai[0]

    def test_new_session_suffix(self, app_client, tracker_data, fake_ai):
        seed_day(tracker_data)
        first = app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL}).json()

        response = app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL, "newSession": True})

        assert first["primeraSesionDelDia"] is True
        assert response.json()["sessionId"] == f"{today_session()}_2"
        assert response.json()["primeraSesionDelDia"] is False

    def test_reviews_failure_degrades(self, app_client, tracker_data, fake_ai):
        seed_day(tracker_data)
        tracker_data["reviews_success"] = False

        response = app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})

        assert response.status_code == 200
        assert response.json()["metrics"]["tareasConTiempo"] == 0

    def test_tracker_down(self, app_client, tracker_data):
        tracker_data["fail"] = True
        response = app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})
        assert response.status_code == 502

    def test_quota_exceeded(self, app_client, tracker_data, monkeypatch):
        seed_day(tracker_data)

        async def out_of_quota(prompt):
            raise QuotaExceededError("AI quota exceeded")

        monkeypatch.setattr(main, "smart_ai_call", out_of_quota)
        response = app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})

        assert response.status_code == 429
        assert response.json()["reason"] == "QUOTA_EXCEEDED"

    def test_providers_down(self, app_client, tracker_data, monkeypatch):
        seed_day(tracker_data)

        async def down(prompt):
            raise AIProviderError("AI_PROVIDER_FAILED")

        monkeypatch.setattr(main, "smart_ai_call", down)
        response = app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})

        assert response.status_code == 503
        assert response.json()["success"] is False


class TestCompactEndpoints:
    """Tests for /actividades and /revisiones."""

    def test_main_activity(self, app_client, tracker_data):
        tracker_data["activities"] = [
            make_activity("a1", "Backend", pendientes=[{"duracionMin": 30}, {"duracionMin": 60}]),
        ]

        response = app_client.post("/actividades", json={"email": TEST_EMAIL})

        assert response.json() == [{"t": "Backend", "h": "09:30-16:30", "p": 2, "duraciones": [30, 60]}]
        messages = database.get_history(TEST_USER_ID, today_session())["mensajes"]
        assert messages[-1]["contenido"] == 'Actividad encontrada: "Backend" con 2 pendientes'

    def test_main_activity_outside_window(self, app_client, tracker_data):
        tracker_data["activities"] = [make_activity("a2", "Soporte", "17:00", "18:00")]

        assert app_client.post("/actividades", json={"email": TEST_EMAIL}).json() == []

    def test_main_activity_invalid_payload(self, app_client, tracker_data):
        tracker_data["activities"] = None

        assert app_client.post("/actividades", json={"email": TEST_EMAIL}).json() == []
        messages = database.get_history(TEST_USER_ID, today_session())["mensajes"]
        assert messages[-1]["contenido"] == "No se encontraron actividades (respuesta inválida)"

    def test_revisions(self, app_client, tracker_data):
        seed_day(tracker_data)

        response = app_client.post("/revisiones", json={"email": TEST_EMAIL, "idsAct": ["a1"]})
        body = response.json()

        assert body["success"] is True
        assert len(body["data"]) == 1
        assert len(body["data"][0]["pendientes"]) == 3
        messages = database.get_history(TEST_USER_ID, today_session())["mensajes"]
        assert messages[-1]["contenido"] == "Se encontraron 1 actividades con 3 pendientes totales."

    def test_revisions_invalid_params(self, app_client):
        response = app_client.post("/revisiones", json={"email": TEST_EMAIL})
        assert response.status_code == 400

    def test_revisions_strips_email(self, app_client, tracker_data):
        seed_day(tracker_data)

        response = app_client.post("/revisiones", json={"email": f"  {TEST_EMAIL} ", "idsAct": []})

        assert len(response.json()["data"]) == 2
        assert tracker_data["requests"][-1].url.params["colaborador"] == TEST_EMAIL


class TestExplanations:
    """Tests for explanation validation and storage."""

    def analyse(self, app_client, tracker_data):
        seed_day(tracker_data)
        app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})

    def test_valid_explanation(self, app_client, tracker_data, fake_ai):
        self.analyse(app_client, tracker_data)
        fake_ai.answer = '```json\n{"esDelTema": true, "razon": "Describe el avance", "sugerencia": ""}\n```'

        response = app_client.post("/validar-explicacion", json={
            "taskName": "API de cobros",
            "explanation": "Terminé el endpoint de cobros",
            "activityTitle": "Backend, pagos",
        })
        body = response.json()

        assert body["valida"] is True
        assert body["razon"] == "Describe el avance"
        assert 'Actividad: "Backend  pagos"' in fake_ai[-1]

        next_task = app_client.get("/siguiente-tarea").json()
        assert next_task["siguienteTarea"]["taskId"] == "p2"
        assert next_task["progreso"]["completadas"] == 1

    def test_invalid_explanation(self, app_client, tracker_data, fake_ai):
        self.analyse(app_client, tracker_data)
        fake_ai.answer = '{"esDelTema": false, "razon": "Habla del clima", "sugerencia": "¿Qué hiciste en la API?"}'

        body = app_client.post("/validar-explicacion", json={
            "taskName": "API de cobros",
            "explanation": "Hace calor",
            "activityTitle": "Backend pagos",
        }).json()

        assert body["valida"] is False
        assert body["categoriaMotivo"] == "INSUFICIENTE"
        history = database.get_history(TEST_USER_ID, today_session())
        assert history["mensajes"][-1]["contenido"] == "Habla del clima. ¿Qué hiciste en la API?"

    def test_unparseable_answer(self, app_client, fake_ai):
        fake_ai.answer = "No sé"

        response = app_client.post("/validar-explicacion", json={
            "taskName": "API", "explanation": "x", "activityTitle": "Backend",
        })

        assert response.status_code == 502
        assert response.json() == {"valida": False, "razon": "Formato de IA inválido."}

    def test_save_explanations_empty(self, app_client):
        response = app_client.post("/guardar-explicaciones", json={"explanations": []})
        assert response.status_code == 400

    def test_save_explanations(self, app_client):
        response = app_client.post("/guardar-explicaciones", json={"explanations": [{
            "taskId": "p1",
            "taskName": "API de cobros",
            "explanation": "Listo el endpoint",
            "confirmed": True,
            "activityTitle": "Backend pagos",
            "duration": 90,
            "priority": "ALTA",
        }]})

        assert response.json() == {
            "success": True,
            "message": "Pendientes guardados correctamente",
            "totalGuardadas": 1,
        }
        cached = database.get_user_activities(TEST_USER_ID)
        assert cached["actividades"][0]["pendientes"][0]["estado"] == "completado"


class TestConfirmPendienteState:
    """Tests for POST /confirmarEstadoPendientes."""

    def test_missing_fields(self, app_client):
        response = app_client.post("/confirmarEstadoPendientes", json={"estado": "completado"})
        assert response.status_code == 400

    def test_invalid_state(self, app_client):
        response = app_client.post("/confirmarEstadoPendientes", json={
            "actividadesId": "a1", "IdPendientes": "p1", "estado": "perdido",
        })
        assert response.status_code == 400

    def test_not_found(self, app_client):
        response = app_client.post("/confirmarEstadoPendientes", json={
            "actividadesId": "a1", "IdPendientes": "p1", "estado": "completado",
        })
        assert response.status_code == 404

    def test_update_with_reason(self, app_client, tracker_data, fake_ai):
        seed_day(tracker_data)
        app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})

        response = app_client.post("/confirmarEstadoPendientes", json={
            "actividadesId": "a1",
            "IdPendientes": "p2",
            "estado": "pendiente",
            "motivoNoCompletado": "Falta acceso a staging",
        })

        assert response.status_code == 200
        assert response.json()["data"] == {"matchedCount": 1, "modifiedCount": 1}

        report = app_client.post("/reporte-diario").json()
        assert report["totalReportes"] == 1
        rows = app_client.get("/reporte-diario").json()["data"]
        assert rows[0]["pendienteId"] == "p2"
        assert rows[0]["motivoNoCompletado"] == "Falta acceso a staging"


class TestChat:
    """Tests for POST /chat."""

    def test_chat_uses_last_analysis(self, app_client, tracker_data, fake_ai):
        seed_day(tracker_data)
        app_client.post("/actividades-con-revisiones", json={"email": TEST_EMAIL})
        fake_ai.answer = "Te recomiendo cerrar primero la API de cobros."

        response = app_client.post("/chat", json={"message": "¿Y ahora qué?"})
        body = response.json()

        assert body["estado"] == "dando_recomendaciones"
        assert body["sugerencias"][0] == "¿Te sirvió la recomendación?"
        assert "Proyecto principal: Portal Clientes" in fake_ai[-1]
        assert "Nuevo mensaje: ¿Y ahora qué?" in fake_ai[-1]
        history = database.get_history(TEST_USER_ID, today_session())
        assert history["estadoConversacion"] == "dando_recomendaciones"

    def test_chat_without_session(self, app_client, fake_ai):
        fake_ai.answer = "Hola, ¿en qué te ayudo?"

        body = app_client.post("/chat", json={"message": "Hola"}).json()

        assert body["estado"] == "esperando_respuesta"
        assert "Aún no se han analizado" in fake_ai[0]

    def use_providers(self, monkeypatch, gemini_text, groq_text=None):
        """Real fallback chain with a Gemini that answers gemini_text and an optional Groq account."""
        async def generate_content(model, contents):
            return SimpleNamespace(text=gemini_text)

        async def create(messages, model):
            message = SimpleNamespace(content=groq_text)
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])

        gemini = SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(generate_content=generate_content)))
        groq = [SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))] if groq_text else []
        monkeypatch.setattr(llm, "_service", AIService(gemini=gemini, groq_clients=groq, retry_delay=0))

    def test_blocked_gemini_answer_falls_back(self, app_client, monkeypatch):
        self.use_providers(monkeypatch, None, "Listo.")

        response = app_client.post("/chat", json={"message": "Hola"})
        body = response.json()

        assert response.status_code == 200
        assert body["provider"] == "Groq"
        assert body["answer"] == "Listo."
        assert body["estado"] == "conversando"

    def test_blocked_answer_without_fallback(self, app_client, monkeypatch):
        self.use_providers(monkeypatch, None)

        response = app_client.post("/chat", json={"message": "Hola"})

        assert response.status_code == 503
        assert database.get_history(TEST_USER_ID, today_session()) is None


class TestHistoryEndpoints:
    """Tests for /historial endpoints."""

    def test_session_history(self, app_client, tracker_data, fake_ai):
        seed_day(tracker_data)
        app_client.post(
            "/actividades-con-revisiones",
            json={"email": TEST_EMAIL, "question": "¿Qué tengo en otros horarios?"},
        )

        body = app_client.get("/historial/sesion").json()
        data = body["data"]

        assert data["sessionId"] == today_session()
        analysis = data["ultimoAnalisis"]["data"]
        assert [a["id"] for a in analysis["actividades"]] == ["a1", "a2"]
        task = analysis["revisionesPorActividad"][0]["tareasConTiempo"][0]
        assert task["explicada"] is False
        assert body["actividades"]["nombre"] == "Portal Clientes"

    def test_session_history_empty(self, app_client):
        body = app_client.get("/historial/sesion", params={"sessionId": "Act_user-1_2020_01_01"}).json()
        assert body["data"] is None

    def test_user_histories_pagination(self, app_client):
        database.save_message(TEST_USER_ID, "s1", "usuario", "Hola")
        database.save_message(TEST_USER_ID, "s2", "usuario", "Hola")
        database.save_message(TEST_USER_ID, "s3", "usuario", "Hola")

        body = app_client.get("/historial/usuario", params={"limit": 2}).json()

        assert len(body["data"]) == 2
        assert body["pagination"] == {"total": 3, "limit": 2, "skip": 0, "hasMore": True}

    def test_delete_session(self, app_client):
        database.save_message(TEST_USER_ID, today_session(), "usuario", "Hola")

        response = app_client.delete("/historial/sesion", params={"sessionId": today_session()})
        assert response.status_code == 200
        assert database.get_history(TEST_USER_ID, today_session()) is None

        response = app_client.delete("/historial/sesion", params={"sessionId": today_session()})
        assert response.status_code == 404
