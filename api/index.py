"""
Vercel Serverless Entry Point for the task automation service
Uses Mangum to adapt FastAPI (ASGI) for serverless environments.
"""

import sys
import os

# Add the parent directory to the path so we can import from the main app
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app, build_components, load_config

from mangum import Mangum

# Lifespan is off on Vercel; wire components at cold start instead
_cfg = load_config()
if _cfg is not None:
    build_components(_cfg)

handler = Mangum(app, lifespan="off")
