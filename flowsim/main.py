"""ASGI entry point for the workflow simulator."""

from .config import load_config
from .factory import create_app

config = load_config()
app = create_app(config)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("flowsim.main:app", **config.get_uvicorn_config())
