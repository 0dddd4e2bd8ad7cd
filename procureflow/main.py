from fastapi import FastAPI

from procureflow.logging_setup import configure_logging
from procureflow.routers import procurement

configure_logging()

app = FastAPI(title='ProcureFlow')

app.include_router(procurement.router)
app.include_router(procurement.callback_router)


@app.get('/healthz')
def healthz() -> dict:
    return {'status': 'ok'}
