from fastapi import FastAPI

from .routers.backup import router as backup_router

app = FastAPI(title="Backup Merge Service", version="0.1.0")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(backup_router)
