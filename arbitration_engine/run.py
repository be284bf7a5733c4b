#!/usr/bin/env python3
"""
Quick runner for the Arbitration Engine
=======================================

Usage:
    python -m arbitration_engine.run
"""

import uvicorn

if __name__ == "__main__":
    print("Starting Arbitration Engine...")
    print("API docs: http://localhost:8000/docs")
    print("Health:   http://localhost:8000/health")
    print()

    uvicorn.run(
        "arbitration_engine.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
