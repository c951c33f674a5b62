# run.py
import os
import sys

import uvicorn

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from holdfast.core.config import HOST, PORT, configure_logging

if __name__ == "__main__":
    configure_logging()
    print("===========================================================")
    print(" HOLDFAST BACKUP SERVICE STARTING...")
    print(f" Control API: http://{HOST}:{PORT}")
    print("===========================================================")

    # "holdfast:create_app" refers to the create_app factory in holdfast/__init__.py
    uvicorn.run(
        "holdfast:create_app",
        host=HOST,
        port=PORT,
        factory=True,
        log_config=None,
    )
