"""Entry point — run with: python -m marketfeed.main"""
import uvicorn

from marketfeed.api.v2.app import app  # noqa: F401

if __name__ == "__main__":
    uvicorn.run("marketfeed.main:app", host="0.0.0.0", port=8201, reload=True)
