#!/usr/bin/env python3
"""
Start the IB toolbox server in production mode
"""
import sys
import os

# Add current directory to Python path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ib_toolbox.toolbox_server import main

if __name__ == '__main__':
    print("📍 For external access use: http://YOUR_PUBLIC_IP:8080")
    # Runs without debug mode or reloader for background execution
    sys.exit(main(sys.argv[1:]))
