"""
Dev rendezvous store: put/get/list over HTTP, backed by memory.

Lets a local cluster of agents form without S3:

    python -m avalanched.storage.server   # listens on AVALANCHED_STORE_PORT
"""

from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response

from avalanched.errors import ObjectNotFound
from avalanched.storage.store import InMemoryObjectStore
from avalanched.utils.env import _env_int, _env_str

MAX_OBJECT_BYTES = _env_int("AVALANCHED_STORE_MAX_OBJECT_BYTES", 256 * 1024 * 1024)

app = FastAPI(title="avalanched rendezvous store", version="0.1.0")
store = InMemoryObjectStore()


@app.get("/healthz")
def healthz():
    return {"ok": True, "objects": len(store)}


@app.put("/objects/{path:path}")
async def put_object(path: str, request: Request):
    if not path:
        raise HTTPException(status_code=400, detail="Empty path")
    body = await request.body()
    if len(body) > MAX_OBJECT_BYTES:
        raise HTTPException(status_code=413, detail="Object too large")
    store.put(path, body)
    return {"ok": True, "path": path, "size": len(body)}


@app.get("/objects/{path:path}")
def get_object(path: str):
    try:
        data = store.get(path)
    except ObjectNotFound:
        raise HTTPException(status_code=404, detail="Not found")
    return Response(content=data, media_type="application/octet-stream")


@app.get("/objects")
def list_objects(prefix: str = ""):
    return {"paths": store.list(prefix)}


def main() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=_env_str("AVALANCHED_STORE_HOST", "0.0.0.0"),
        port=_env_int("AVALANCHED_STORE_PORT", 9700),
    )


if __name__ == "__main__":
    main()
