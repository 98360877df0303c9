import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from src.api.routes import categories, customers, notifications, orders, products, staff, wallet
from src.core.config import LOG_LEVEL
from src.core.database import Base, engine

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    yield

app = FastAPI(
    lifespan=lifespan,
    title="Inventory Manager Backend",
    description="Catalog, customer approval, wallet and order workflow for inventory management",
    version="1.0.0"
)

# Include routers
app.include_router(products.router, prefix="/api/v1/products", tags=["products"])
app.include_router(categories.router, prefix="/api/v1/categories", tags=["categories"])
app.include_router(customers.router, prefix="/api/v1/customers", tags=["customers"])
app.include_router(staff.router, prefix="/api/v1/staff", tags=["staff"])
app.include_router(wallet.router, prefix="/api/v1/wallet", tags=["wallet"])
app.include_router(orders.router, prefix="/api/v1/orders", tags=["orders"])
app.include_router(notifications.router, prefix="/api/v1/notifications", tags=["notifications"])

@app.get("/")
async def root():
    return {"message": "Inventory Manager Backend API"}

@app.get("/health")
async def health_check():
    return {"status": "healthy"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
