from dotenv import load_dotenv

load_dotenv(override=True)

from gate.config import load_config
from gate.core import run_gate

def main():
    config = load_config()
    run_gate(config)

if __name__ == "__main__":
    main()
