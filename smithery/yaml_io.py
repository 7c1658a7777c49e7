"""Setup YAML to use fast loaders if possible, and fold multi-line strings.

Use the fast CSafeLoader/CSafeDumper from the LibYAML C library if they are
available on the host, or fall back to the slow Python loader/dumper if not.
Multi-line strings (eg long `description` fields in CRD schemas) are dumped
with the "|" syntax to keep the manifests readable.

"""
import logging
from typing import Any, List

import yaml

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("smithery")

try:                                 # codecov-skip
    from yaml import (  # type: ignore
        CSafeDumper as Dumper, CSafeLoader as Loader,
    )
    logit.debug("Using LibYAML C library")
except ImportError:                  # codecov-skip
    from yaml import SafeDumper as Dumper, SafeLoader as Loader  # type: ignore
    logit.debug("Using Python YAML library")


def fold_yaml_strings(dumper, data):
    """
    Fold all YAML strings that contain a new-line, ie use the `|` notation, eg

    description: |
      this is
      a multi-line string.

    """
    if '\n' in data:
        return dumper.represent_scalar('tag:yaml.org,2002:str', data, style='|')
    return dumper.represent_scalar('tag:yaml.org,2002:str', data)


# Install the new string converter into the Dumper.
Dumper.add_representer(str, fold_yaml_strings)


def dump(data: Any) -> str:
    """Return `data` as a YAML string with keys in insertion order."""
    return yaml.dump(data, Dumper=Dumper, default_flow_style=False, sort_keys=False)


def load_all(text: str | bytes) -> List[Any]:
    """Return all non-empty documents in `text`.

    Raises `yaml.YAMLError` if `text` is not valid YAML (or JSON).

    """
    return [_ for _ in yaml.load_all(text, Loader=Loader) if _ is not None]
