"""
Serve every reference tool.

    python -m toolbridge.servers                       # stdio
    python -m toolbridge.servers --tcp 127.0.0.1:5057
"""

from toolbridge.server import run_server
from toolbridge.servers import build_server

if __name__ == "__main__":
    run_server(build_server())
