import logging
from typing import Any

from bson import ObjectId
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from aggregation import AggregationEngine
from config import Config, mask_uri, setup_logging
from database import open_session
from repository import RecordRepository
from schemas import City

logger = logging.getLogger(__name__)

app = FastAPI(title="Customer Atlas API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_config() -> Config:
    return Config()


def to_json(value: Any) -> Any:
    """Render ObjectIds as strings and expose a stored document's ObjectId _id as id.

    Any other _id, such as an aggregation group key, is left as _id.
    """
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [to_json(v) for v in value]
    if isinstance(value, dict):
        if not isinstance(value.get("_id"), ObjectId):
            return {k: to_json(v) for k, v in value.items()}
        out = {k: to_json(v) for k, v in value.items() if k != "_id"}
        return {"id": str(value["_id"]), **out}
    return value


def error_response(e: Exception) -> JSONResponse:
    logger.error(f"Request failed: {e}")
    return JSONResponse(status_code=500, content={"error": str(e)})


@app.get("/")
def read_root():
    return {"message": "Customer Atlas API running"}


@app.get("/test")
def test_database(config: Config = Depends(get_config)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        with open_session(config) as session:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            try:
                response["collections"] = session.list_collection_names()[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    except Exception as e:
        logger.warning(f"Health check against {mask_uri(config.DATABASE_URL)} failed: {e}")
        response["database"] = f"❌ Error: {str(e)[:50]}"

    return response


@app.get("/customers")
def list_customers(config: Config = Depends(get_config)):
    try:
        with open_session(config) as session:
            data = AggregationEngine(session).customers_with_city(
                config.CUSTOMERS_COLLECTION, config.CITIES_COLLECTION)
        return to_json(data)
    except Exception as e:
        return error_response(e)


@app.get("/cities")
def list_cities(config: Config = Depends(get_config)):
    try:
        with open_session(config) as session:
            cities = list(RecordRepository(session, config.CITIES_COLLECTION, City).find({}))
        return to_json(cities)
    except Exception as e:
        return error_response(e)


@app.get("/customers/aggregation/city")
def customers_by_city(config: Config = Depends(get_config)):
    try:
        with open_session(config) as session:
            data = AggregationEngine(session).customers_by_city(config.CUSTOMERS_COLLECTION)
        return to_json(data)
    except Exception as e:
        return error_response(e)


if __name__ == "__main__":
    import uvicorn
    config = Config()
    setup_logging(config.LOG_LEVEL)
    config.log_summary()
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
