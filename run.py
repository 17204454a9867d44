import logging
import sys
import uvicorn

from driftwatch.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler("driftwatch.log")
    ]
)

logger = logging.getLogger(__name__)

def main():
    """Run the engine and its query API with uvicorn"""
    logger.info(f"Starting Driftwatch for {', '.join(settings.MONITORED_ENVIRONMENTS)}")
    uvicorn.run(
        "driftwatch.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )

if __name__ == "__main__":
    main()
