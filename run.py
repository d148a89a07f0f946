#!/usr/bin/env python3
"""
Lendbook Entry Point

Starts the FastAPI server for the lending back office. Host, port, storage
and scheduler settings come from LENDBOOK_* environment variables.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lendbook.api import run_server
from lendbook.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Lendbook...")
    print(f"Storage: {config.storage_backend} ({config.database_path})")
    print(f"Invoice scheduler: {'enabled' if config.invoice_scheduler_enabled else 'disabled'}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Lendbook...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
