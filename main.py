import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from cachetools import LRUCache
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware

import database
from auth import AuthClient
from auth_context import AuthContext
from database import DataStore, ensure_schema
from problems import fetch_problem, fetch_problems, search_problems, status_counts
from reporting import ProblemReporter
from schemas import LoginRequest, Problem, Profile, RegisterRequest, ReportProblemForm
from ui import Navigator, Toaster

APP_NAME = "ProblemScout API"
CLIENT_COOKIE = "problemscout_client"
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
MAX_CLIENTS = int(os.getenv("MAX_CLIENTS", "1000"))

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_schema(database.db)
    yield
    clients.clear()


app = FastAPI(title=APP_NAME, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Per-client state ----------

class ClientApp:
    """Everything one browser client holds: its auth session, toasts, route and flows."""

    def __init__(self, db):
        self.auth = AuthClient(db)
        self.store = DataStore(db, self.auth)
        self.toaster = Toaster()
        self.navigator = Navigator()
        self.auth_context = AuthContext(self.auth, self.store, self.toaster, self.navigator)
        self.reporter = ProblemReporter(self.auth_context, self.store, self.toaster)

    async def view(self, data: Any = None) -> Dict[str, Any]:
        await self.auth_context.wait_idle()
        snapshot = self.auth_context.snapshot()
        return {
            "path": self.navigator.location,
            "notifications": [n.model_dump() for n in self.toaster.drain()],
            "user": snapshot.user.model_dump(mode="json") if snapshot.user else None,
            "profile": snapshot.profile.model_dump(mode="json") if snapshot.profile else None,
            "phase": snapshot.phase,
            "data": data,
        }


class ClientCache(LRUCache):
    """Least recently used clients are dropped and unsubscribed once the cache is full."""

    def popitem(self):
        client_id, client = super().popitem()
        logger.info("Evicting client %s", client_id)
        client.auth_context.close()
        return client_id, client


clients = ClientCache(maxsize=MAX_CLIENTS)


async def get_client(request: Request, response: Response) -> ClientApp:
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")

    client_id = request.cookies.get(CLIENT_COOKIE)
    client = clients.get(client_id) if client_id else None
    if client is None:
        client_id = str(uuid.uuid4())
        client = ClientApp(database.db)
        clients[client_id] = client
        logger.info("New client %s", client_id)
        await client.auth_context.start()
        response.set_cookie(CLIENT_COOKIE, client_id, httponly=True, samesite="lax")
    else:
        # An expired token signs the client out before the route runs.
        await client.auth.get_session()
    return client


def dump_problem(problem: Problem) -> Dict[str, Any]:
    out = problem.model_dump(mode="json")
    out["has_location"] = problem.has_location
    return out


# ---------- Basic routes ----------

@app.get("/")
def root():
    return {"message": f"{APP_NAME} running"}


@app.get("/test")
def test_database():
    info = {
        "backend": "running",
        "database": "disconnected",
        "collections": [],
    }
    try:
        if database.db is not None:
            info["database"] = "connected"
            info["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        info["database"] = f"error: {str(e)[:80]}"
    return info


@app.get("/schema")
def get_schema():
    return {
        "problem": Problem.model_json_schema(),
        "profile": Profile.model_json_schema(),
        "report": ReportProblemForm.model_json_schema(),
    }


# ---------- Auth endpoints ----------

@app.post("/auth/register")
async def register(req: RegisterRequest, client: ClientApp = Depends(get_client)):
    await client.auth_context.sign_up(req.email, req.password, req.name)
    return await client.view()


@app.post("/auth/login")
async def login(req: LoginRequest, client: ClientApp = Depends(get_client)):
    await client.auth_context.sign_in(req.email, req.password)
    return await client.view()


@app.post("/auth/logout")
async def logout(client: ClientApp = Depends(get_client)):
    await client.auth_context.sign_out()
    return await client.view()


@app.get("/auth/callback")
async def auth_callback(token: Optional[str] = None, client: ClientApp = Depends(get_client)):
    await client.auth_context.handle_auth_callback(token)
    return await client.view()


@app.get("/me")
async def me(client: ClientApp = Depends(get_client)):
    return await client.view()


@app.post("/me/profile/refresh")
async def refresh_profile(client: ClientApp = Depends(get_client)):
    await client.auth_context.refresh_profile()
    return await client.view()


# ---------- Problem endpoints ----------

@app.get("/problems")
async def list_problems(q: Optional[str] = None, client: ClientApp = Depends(get_client)):
    problems = await fetch_problems(client.store, client.toaster)
    found = search_problems(problems, q)
    return await client.view({"count": len(found), "problems": [dump_problem(p) for p in found]})


@app.get("/problems/{problem_id}")
async def get_problem(problem_id: str, response: Response, client: ClientApp = Depends(get_client)):
    problem = await fetch_problem(client.store, client.toaster, client.navigator, problem_id)
    if problem is None:
        response.status_code = 404
        return await client.view()
    return await client.view(dump_problem(problem))


@app.post("/problems")
async def report_problem(form: ReportProblemForm, client: ClientApp = Depends(get_client)):
    result = await client.reporter.report_problem(form.to_data())
    if result is False:
        return await client.view({"ok": False})
    return await client.view({"ok": True, "problem": dump_problem(result)})


@app.get("/dashboard")
async def dashboard(client: ClientApp = Depends(get_client)):
    user = client.auth_context.user
    if user is None:
        client.navigator.navigate("/login")
        return await client.view()

    problems = await fetch_problems(client.store, client.toaster, user_id=user.id)
    return await client.view({
        "counts": status_counts(problems),
        "problems": [dump_problem(p) for p in problems],
    })


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
