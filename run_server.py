#!/usr/bin/env python3
"""
RaceSteward API Server Launcher
"""

import os
import sys

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from dotenv import load_dotenv

from config import Settings
from monitoring import configure_logging

if __name__ == '__main__':
    load_dotenv()
    settings = Settings.from_env()
    configure_logging(settings.log_level, json_output=settings.log_format == "json")

    from api import run_server
    run_server(settings)
