#!/usr/bin/env python3
"""
Lease & Ledger Engine Entry Point

Starts the FastAPI server with the lease ledger system.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lease_ledger.api import run_server
from lease_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Lease & Ledger Engine...")
    print(f"Storage: {config.database_url}")
    print(f"Default currency: {config.default_currency}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Lease & Ledger Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
