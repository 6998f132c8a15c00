from typing import Any


class Merger:
    """Merges layered configuration values where later layers win."""

    @staticmethod
    def is_unset(value: Any) -> bool:
        """None and empty strings count as unset, False and 0 do not."""
        return value is None or value == ""

    @staticmethod
    def merge(*layers: dict[str, Any] | None) -> dict[str, Any]:
        """
        Merge layers from lowest to highest precedence.

        Unset values never overwrite a value from a lower layer.
        Nested dicts are merged per key under the same rule.

        Example:
            merge({"a": 1, "m": {"x": "1"}}, {"a": None, "m": {"y": "2"}})
            -> {"a": 1, "m": {"x": "1", "y": "2"}}
        """
        result: dict[str, Any] = {}
        for layer in layers:
            if not layer:
                continue
            for key, value in layer.items():
                if Merger.is_unset(value):
                    continue
                if isinstance(value, dict):
                    existing = result.get(key, {})
                    result[key] = {
                        **existing,
                        **{k: v for k, v in value.items() if not Merger.is_unset(v)},
                    }
                else:
                    result[key] = value
        return result
