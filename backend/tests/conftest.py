"""
Shared pytest fixtures for backend tests.
Uses an in-memory mongomock database and a mocked tracker API.
"""
import pytest
import sys
import os

import httpx
import jwt
import mongomock

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import auth
import database
from tracker_client import TrackerClient

TEST_SECRET = "test-secret"
TEST_USER_ID = "user-1"
TEST_EMAIL = "ana@example.com"


def make_activity(activity_id, titulo, hora_inicio="09:30", hora_fin="16:30", **extra):
    activity = {
        "id": activity_id,
        "titulo": titulo,
        "horaInicio": hora_inicio,
        "horaFin": hora_fin,
        "status": "En proceso",
        "tituloProyecto": "Portal Clientes",
        "pendientes": [],
    }
    activity.update(extra)
    return activity


def make_pendiente(pendiente_id, nombre, duracion=0, email=TEST_EMAIL, **extra):
    pendiente = {
        "id": pendiente_id,
        "nombre": nombre,
        "terminada": False,
        "confirmada": False,
        "duracionMin": duracion,
        "fechaCreacion": "2025-01-01T10:00:00",
        "fechaFinTerminada": None,
        "assignees": [{"name": email}],
    }
    pendiente.update(extra)
    return pendiente


def make_reviews(*activities):
    """Reviews payload: one collaborator holding the given review activities."""
    return {"colaboradores": [{"items": {"actividades": list(activities)}}]}


@pytest.fixture
def test_db(monkeypatch):
    """
    Isolated in-memory database for each test.
    database.get_db() returns it as if a connection were already open.
    """
    db = mongomock.MongoClient().db
    monkeypatch.setattr(database, "_db", db)
    monkeypatch.setattr(database, "_client", None)
    database.init_db()
    yield db


@pytest.fixture
def tracker_data():
    """
    What the mocked tracker API returns. Tests mutate it before calling the app.
    activities=None makes the del-dia endpoint answer without a list.
    """
    return {
        "users": [
            {"collaboratorId": "c-1", "email": TEST_EMAIL, "firstName": "Ana", "lastName": "López"},
        ],
        "activities": [],
        "reviews": make_reviews(),
        "reviews_success": True,
        "fail": False,
        "requests": [],
    }


@pytest.fixture
def tracker_transport(tracker_data):
    def handler(request: httpx.Request) -> httpx.Response:
        tracker_data["requests"].append(request)
        if tracker_data["fail"]:
            return httpx.Response(500, json={"message": "boom"})
        path = request.url.path
        if path.endswith("/users/search"):
            return httpx.Response(200, json={"items": tracker_data["users"]})
        if path.endswith("/del-dia"):
            return httpx.Response(200, json={"data": tracker_data["activities"]})
        if path.endswith("/reportes/revisiones-por-fecha"):
            return httpx.Response(200, json={
                "success": tracker_data["reviews_success"],
                "data": tracker_data["reviews"],
            })
        return httpx.Response(404, json={"message": "not found"})

    return httpx.MockTransport(handler)


@pytest.fixture
def tracker(tracker_transport):
    return TrackerClient(api_url="http://tracker/api", users_url="http://users", transport=tracker_transport)


@pytest.fixture
def auth_token(monkeypatch):
    monkeypatch.setattr(auth, "TOKEN_SECRET", TEST_SECRET)
    return jwt.encode({"id": TEST_USER_ID}, TEST_SECRET, algorithm="HS256")


@pytest.fixture
def app_client(test_db, tracker, auth_token):
    """
    Test client for the FastAPI app, logged in as TEST_USER_ID.
    The tracker dependency is replaced by the mocked one.
    """
    from fastapi.testclient import TestClient
    import main

    main.app.dependency_overrides[main.get_tracker] = lambda: tracker
    with TestClient(main.app) as client:
        client.cookies.set("token", auth_token)
        yield client
    main.app.dependency_overrides.clear()


@pytest.fixture
def fake_ai(monkeypatch):
    """
    Replace the LLM call in main. Returns the list of prompts received;
    set fake_ai.answer to control the reply.
    """
    import main
    from llm import AIResult

    class FakeAI(list):
        answer = "Para tu proyecto 'Portal Clientes', empieza por la API. ¿Empezamos?"
        provider = "Gemini"

    fake = FakeAI()

    async def smart_ai_call(prompt):
        fake.append(prompt)
        return AIResult(text=fake.answer, provider=fake.provider)

    monkeypatch.setattr(main, "smart_ai_call", smart_ai_call)
    return fake
