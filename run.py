#!/usr/bin/env python3
"""
Docflow Worker Entry Point

Runs the SLA worker against the configured storage backend.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from docflow.worker import main


if __name__ == "__main__":
    print("📄 Starting Docflow worker...")
    print("⏰ SLA checks and escalations enabled")
    print("🔒 Audit trail active")
    print()

    try:
        main()
    except Exception as e:
        print(f"❌ Error running worker: {e}")
        sys.exit(1)
