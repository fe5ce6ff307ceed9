from railyard.indexing.train_index import (
    Err,
    Ok,
    ParseResult,
    TrainIndex,
    TrainIndexErrorKind,
    normalize,
    parse,
    parse_result,
    try_normalize,
    try_parse,
)

__all__ = [
    "Err",
    "Ok",
    "ParseResult",
    "TrainIndex",
    "TrainIndexErrorKind",
    "normalize",
    "parse",
    "parse_result",
    "try_normalize",
    "try_parse",
]
