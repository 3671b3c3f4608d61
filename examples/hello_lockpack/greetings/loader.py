import importlib.resources
import json


def load_config() -> dict[str, str]:
    """Read the package's config.json.

    Inside a container the file only exists in the virtual filesystem;
    ``importlib.resources`` reaches it through the container's loader.
    """

    return json.loads(importlib.resources.files(__package__).joinpath("config.json").read_text())
