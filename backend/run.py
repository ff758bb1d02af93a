#!/usr/bin/env python3
"""Local development server for the car share API."""

import os

import uvicorn

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    print(f"Starting car share API at http://localhost:{port}")
    print(f"API Docs: http://localhost:{port}/docs")

    uvicorn.run("carshare.main:app", host="0.0.0.0", port=port, reload=True, log_level="info")
