import json
import sys

from greetings import make_message
from greetings.loader import load_config


def main() -> None:
    """Run the demo app.
    """

    msg: str = make_message(load_config()["name"])
    print(msg)

    payload: dict[str, object] = {
        "argv": sys.argv[1:],
        "module_file": __file__,
    }
    print(json.dumps(payload, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
