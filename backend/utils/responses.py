from fastapi.responses import JSONResponse
from pydantic import BaseModel


def _payload(data):
    if data is None:
        return {}
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    return data


def success_response(data=None, message="OK", status=200):
    """Envelope for successful billing API calls: {ok, data, error, message}"""
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": _payload(data),
            "error": None,
            "message": message,
        }
    )


def error_response(error_code, status=400, message="An error occurred", data=None):
    """Envelope for failed billing API calls; ``error_code`` is a stable machine-readable string"""
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": _payload(data),
            "error": error_code,
            "message": message,
        }
    )
