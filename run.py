#!/usr/bin/env python3
"""
Run the session agent from a source checkout without installing it.

    python run.py run --paper
    python run.py trigger lp_rebalance --paper
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from session_agent.cli import main

if __name__ == "__main__":
    main()
