from __future__ import annotations

from fastapi import HTTPException


def bad_request(code: str, message: str):
    raise HTTPException(status_code=400, detail={"code": code, "message": message})


def not_found(code: str, message: str):
    raise HTTPException(status_code=404, detail={"code": code, "message": message})


def bad_coordinates(lat: float | None, lng: float | None):
    bad_request("bad_coordinates", f"latitude/longitude out of range or missing: lat={lat} lng={lng}")


def unavailable(code: str, message: str):
    # Used when every cache tier and the provider came back empty.
    raise HTTPException(status_code=503, detail={"code": code, "message": message})
