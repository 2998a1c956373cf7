import logging

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import PlainTextResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from chat_bridge.bridge import error_response, handle_chat
from chat_bridge.config import create_logger, get_settings
from chat_bridge.schemas import ChatRequest

settings = get_settings()
create_logger(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Chat Bridge") #creating the web-app instance (the object that uvicorn runs)


@app.post("/api/chat")
async def chat(request: Request) -> Response:
    try:
        body = await request.body()
        chat_request = ChatRequest.model_validate_json(body) #messages defaults to []
    except Exception as exc:
        logger.exception("Could not parse chat request")
        return error_response(exc)

    return await handle_chat(chat_request.messages)


@app.exception_handler(StarletteHTTPException)
async def api_http_exception(request: Request, exc: StarletteHTTPException) -> Response:
    # anything under /api/ that did not reach a route gets the fixed plain-text answers
    path = request.url.path
    if path == "/api/chat":
        return PlainTextResponse("Method not allowed", status_code=405)
    if path.startswith("/api/"):
        return PlainTextResponse("Not found", status_code=404)
    return await http_exception_handler(request, exc)


@app.get("/healthz")
def healthz() -> dict[str, bool]:
    return {"ok": True}


# everything outside /api/ is the frontend, mounted last so the routes above win
app.mount("/", StaticFiles(directory=settings.public_dir, html=True), name="public")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
