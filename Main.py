import logging

import uvicorn
from dotenv import load_dotenv

from rank_gateway import __version__
from rank_gateway.app import create_app
from rank_gateway.config import Settings

load_dotenv()
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

settings = Settings.from_env()
app = create_app(settings)

if __name__ == "__main__":
    print(f"--- Roblox Rank Gateway [v{__version__}] ---")
    print("Starting server...")
    print(f"Listening on: http://0.0.0.0:{settings.port}")
    print(f"API Documentation available at: http://127.0.0.1:{settings.port}/docs")
    print(f"Group: {settings.group_id} | Data directory: {settings.data_dir}")
    print("-----------------------------------")
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
