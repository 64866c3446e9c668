"""dropzone - drag-and-drop file upload server powered by Robyn."""

from robyn import Robyn

from dropzone.api.health import router as health_router
from dropzone.api.upload import router as upload_router
from dropzone.core.lifespan import create_lifespan
from dropzone.core.logger import logger
from dropzone.core.settings import settings as st
from dropzone.events.storage import StorageEvent
from dropzone.middlewares.base import MiddlewareHandler
from dropzone.middlewares.files import FileUploadOpenAPIMiddleware

app = Robyn(__file__)

# Lifespan events
lifespan = create_lifespan(app)
lifespan.register(StorageEvent)

app.startup_handler(lifespan.startup)
app.shutdown_handler(lifespan.shutdown)

# Routers
app.include_router(health_router)
app.include_router(upload_router)

# Middlewares
middlewares = MiddlewareHandler(app)
middlewares.register(FileUploadOpenAPIMiddleware())


def main() -> None:
    logger.info(
        "🚀 STARTING %s | HOST=%s | PORT=%s | STORAGE=%s", st.API_NAME, st.API_HOST, st.API_PORT, st.STORAGE_ROOT
    )
    app.start(host=st.API_HOST, port=st.API_PORT)


if __name__ == "__main__":
    main()
