"""
Streetwise Safety Engine - FastAPI entry point
Logic is split across:
  grid.py, crime_grid.py, lighting.py, hazards.py, scoring.py, route_scoring.py,
  data_fetchers.py, engine.py, routes.py
"""

import logging

from streetwise.config import LOG_LEVEL

logging.basicConfig(level=LOG_LEVEL)

from streetwise.routes import app  # noqa: E402,F401


def run():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
