from fastapi import FastAPI
from .routes import images, sync

app = FastAPI(title="Inventory Sync API", version="0.1.0")

app.include_router(sync.router, prefix="/sync", tags=["sync"])
app.include_router(images.router, prefix="/images", tags=["images"])
