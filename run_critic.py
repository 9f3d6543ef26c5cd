#!/usr/bin/env python3
"""
Startup script for the Director critic.

To run:
    python run_critic.py director_response.json [options]

Example usage:
    python run_critic.py samples/director_response.json --debug
    python run_critic.py response.json --server-url http://gpu-box:8080/v1

Run this from the project root directory with a llama.cpp server running.
"""

import sys
import os

# Add project root to Python path
project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from runtime.main import main

if __name__ == "__main__":
    main()
