from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from chatsync.config import get_settings
from chatsync.utils.logging import configure_logging
from .routers import chats

load_dotenv()
configure_logging()
settings = get_settings()

app = FastAPI(
    title="chatsync",
    description="Authenticated chat record storage for chatsync clients.",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*", "Authorization"],
)

app.include_router(chats.router)
app.include_router(chats.folders_router)


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
