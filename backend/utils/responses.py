from fastapi.responses import JSONResponse


def success_response(data=None, status=200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            **(data or {}),
        }
    )


def error_response(error, status=400):
    """Structured failure body; callers pass a user-safe message only."""
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "error": error,
        }
    )


def webhook_ack(event_type, processed, status=200, **extra):
    """Acknowledgement returned to payment providers."""
    return JSONResponse(
        status_code=status,
        content={
            "received": True,
            "processed": processed,
            "event_type": event_type,
            **extra,
        }
    )
