from fastapi import FastAPI

from coach_ledger.api.account import router as account_router
from coach_ledger.api.chat import router as chat_router
from coach_ledger.db.session import create_tables, get_storage

app = FastAPI(title="Coach Ledger")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {
        "status": "ok",
        "persistence": "enabled" if get_storage().available else "disabled",
    }


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "Coach Ledger API", "status": "ok"}


app.include_router(chat_router)
app.include_router(account_router)
