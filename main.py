"""
main.py
========
Central entry point for the VoiceStream application.

Run with:
    uvicorn main:app
    python main.py            (VOICESTREAM_HOST / VOICESTREAM_PORT)

Auto-reload is left off: a reload restarts the process and drops any live
capture session.
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()  # Load .env before any module reads env vars

# Configure logging for the entire application
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# A live session makes a recognition request every few seconds; keep the
# SDK transport chatter out of the pipeline log.
for _noisy_logger in ("openai", "openai._base_client", "httpx", "httpcore"):
    logging.getLogger(_noisy_logger).setLevel(logging.WARNING)

from voicestream.log_buffer import install_ring_buffer  # noqa: E402

install_ring_buffer()

from voicestream.api.server import app  # noqa: F401, E402

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.environ.get("VOICESTREAM_HOST", "127.0.0.1"),
        port=int(os.environ.get("VOICESTREAM_PORT", "8000")),
    )
