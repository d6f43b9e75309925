"""
Inference request value type

A request is built once by the caller, handed to the queue and consumed by a
single generation session. It is never mutated afterwards.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_loader import get_config
from errors import InvalidInputError
from validators import validate_inference_params

# (text, done)
InferenceCallback = Callable[[str, bool], None]


@dataclass(frozen=True)
class InferenceRequest:
    """One generation request"""

    request_id: int
    model_path: str
    input: str
    mmproj_path: Optional[str] = None
    context_size: int = 2048
    max_tokens: int = 512
    num_threads: int = 4
    num_gpu_layers: int = 0
    temperature: float = 0.8
    top_p: float = 0.95
    penalty_freq: float = 0.0
    penalty_repeat: float = 1.0
    eos_token: Optional[str] = None
    grammar: Optional[str] = None  # reserved, not applied
    seed: Optional[int] = None
    log_sink: Optional[Callable[[str], None]] = None

    @property
    def min_p(self) -> float:
        """Min-p threshold derived from top_p"""
        return max(0.0, 1.0 - self.top_p)

    @classmethod
    def from_params(
        cls,
        params: Dict[str, Any],
        log_sink: Optional[Callable[[str], None]] = None,
    ) -> "InferenceRequest":
        """
        Build a request from JSON-RPC params, applying config defaults

        Raises:
            InvalidInputError: If a field is missing or out of range
        """
        try:
            validate_inference_params(params)
            request_id = params["request_id"]
            if isinstance(request_id, bool) or not isinstance(request_id, int):
                raise ValueError("request_id must be an integer")
        except KeyError:
            raise InvalidInputError("request_id is required") from None
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc

        config = get_config()

        def pick(name: str, default: Any) -> Any:
            value = params.get(name)
            return default if value is None else value

        return cls(
            request_id=request_id,
            model_path=params["model_path"],
            mmproj_path=params.get("mmproj_path") or None,
            input=params["input"],
            context_size=pick("context_size", config.default_context_length),
            max_tokens=pick("max_tokens", config.default_max_tokens),
            num_threads=pick("num_threads", config.default_num_threads),
            num_gpu_layers=pick("num_gpu_layers", config.default_num_gpu_layers),
            temperature=float(pick("temperature", 0.8)),
            top_p=float(pick("top_p", 0.95)),
            penalty_freq=float(pick("penalty_freq", 0.0)),
            penalty_repeat=float(pick("penalty_repeat", 1.0)),
            eos_token=params.get("eos_token") or None,
            grammar=params.get("grammar"),
            seed=params.get("seed"),
            log_sink=log_sink,
        )
