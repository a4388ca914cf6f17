import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI

from config import get_settings
from contact_store import ContactStore
from db_models import ContactResponse, IdentifyRequest
from db_setup import init_db
from errors import register_error_handlers
from reconciliation import identify as reconcile

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    init_db(settings.database_path)
    logger.info("Contact database ready at %s", settings.database_path)
    yield


settings = get_settings()

app = FastAPI(
    title=settings.app_title,
    version=settings.app_version,
    lifespan=lifespan,
)
register_error_handlers(app)


def get_store() -> ContactStore:
    return ContactStore(get_settings().database_path)


@app.get("/")
async def root():
    return {"message": "Bitespeed API is up"}


@app.post("/identify", response_model=ContactResponse)
def identify(request: Optional[IdentifyRequest] = None, store: ContactStore = Depends(get_store)):
    # a missing or null body is the same as {}
    if request is None:
        request = IdentifyRequest()
    return reconcile(store, request, max_attempts=get_settings().max_merge_attempts)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
