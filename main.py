# main.py
import logging

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()
from config import BASE_PATH
from api.utilization import router as utilization_router
from security.logging_filters import RedactSecretsFilter


logger = logging.getLogger("uvicorn.error")
for _name in ("uvicorn.error", "uvicorn.access"):
    logging.getLogger(_name).addFilter(RedactSecretsFilter())

app = FastAPI(root_path=BASE_PATH, title="Fund Utilization")
app.include_router(utilization_router)


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
