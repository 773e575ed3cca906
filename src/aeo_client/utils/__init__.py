from .env import load_local_env

__all__ = ["load_local_env"]
