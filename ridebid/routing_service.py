from fastapi import FastAPI
from pydantic import BaseModel, Field
import logging
from .distance import haversine_miles
from .logging_setup import configure_logging

# ensure logging is configured when run standalone
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Routing Service")

# straight-line miles times this approximates driving distance
ROAD_FACTOR = 1.3


class DistanceRequest(BaseModel):
    """Request for the driving distance between two points."""
    origin_lat: float = Field(..., ge=-90, le=90)
    origin_lng: float = Field(..., ge=-180, le=180)
    destination_lat: float = Field(..., ge=-90, le=90)
    destination_lng: float = Field(..., ge=-180, le=180)


class DistanceResponse(BaseModel):
    distance_miles: float


@app.post("/distance", response_model=DistanceResponse)
async def distance(req: DistanceRequest):
    """Estimated driving miles between origin and destination."""
    origin = (req.origin_lat, req.origin_lng)
    destination = (req.destination_lat, req.destination_lng)
    miles = round(haversine_miles(origin, destination) * ROAD_FACTOR, 2)
    logger.info("distance_request: origin=%s destination=%s miles=%s", origin, destination, miles)
    return DistanceResponse(distance_miles=miles)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8001)
