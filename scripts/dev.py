import os
import uvicorn
from dotenv import load_dotenv

def main():
    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    load_dotenv(os.path.join(base_dir, '.env'))

    # imported after load_dotenv so Settings sees the .env values
    from igqueue.config import get_settings
    settings = get_settings()

    print(f"database: {settings.database_url.split('@')[-1]}")
    print(f"graph api: {settings.graph_api_base}")
    print(f"background sweep: {'every %d min' % settings.sweep_interval_minutes if settings.post_fallback_enabled else 'off'}")
    print(f"api key guard: {'on' if settings.agent_api_key else 'off'}")

    port = int(os.environ.get("PORT", "8000"))
    print(f"Starting igqueue at http://0.0.0.0:{port}")
    uvicorn.run("igqueue.main:create_app", factory=True, host="0.0.0.0", port=port, reload=False)

if __name__ == "__main__":
    main()
