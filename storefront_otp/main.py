from fastapi import FastAPI

from storefront_otp.database import init_db
from storefront_otp.routers import health, otp


app = FastAPI(title="Storefront OTP")

app.include_router(health.router, prefix="/api")
app.include_router(otp.router, prefix="/api")


@app.on_event("startup")
def startup() -> None:
    init_db()


@app.get("/")
def root():
    return {"status": "OTP service running"}
