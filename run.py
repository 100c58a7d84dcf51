# run.py
import uvicorn
import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from serverpanel.core.config import PORT, HOST

if __name__ == "__main__":
    print(f"===========================================================")
    print(f" GAME SERVER PANEL STARTING...")
    print(f" API URL: http://{HOST}:{PORT}/api/servers")
    print(f"===========================================================")

    # No reload: a reloader restart would orphan the supervised game servers
    uvicorn.run(
        "serverpanel:create_app",
        host=HOST,
        port=PORT,
        factory=True
    )
