"""Run the API server: python -m src.classutp"""

from src.classutp.api import run

if __name__ == "__main__":
    run()
