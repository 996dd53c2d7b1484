import re
from dataclasses import asdict, dataclass
from typing import Optional

from flask import Flask, jsonify
from werkzeug.exceptions import MethodNotAllowed, NotFound

from errors import ParameterError

GREETING = "I am Root!"

# optional whitespace, optional sign, then base-10 digits; the rest is ignored
_INT_PREFIX = re.compile(r"\s*([+-]?[0-9]+)")
# keeps sums under the interpreter's int_max_str_digits (4300) when serialized
MAX_DIGITS = 4000


@dataclass
class Greeting:
    message: str


@dataclass
class SumResult:
    ans: int


@dataclass
class ErrorBody:
    error: str
    detail: str


@dataclass
class ParseResult:
    """Outcome of parsing one path parameter."""
    value: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_int_prefix(text: str) -> ParseResult:
    """Parse the leading integer of ``text``; ``"12abc"`` gives 12."""
    match = _INT_PREFIX.match(text)
    if match is None:
        return ParseResult(error=f"no integer prefix in {text!r}")
    digits = match.group(1)
    if len(digits.lstrip("+-")) > MAX_DIGITS:
        return ParseResult(error=f"integer too long: more than {MAX_DIGITS} digits")
    try:
        value = int(digits)
    except ValueError as e:
        return ParseResult(error=str(e))
    return ParseResult(value=value)


def add(a: int, b: int) -> int:
    return a + b


def render(model, status: int = 200):
    """Serialize a response model as a JSON response."""
    return jsonify(asdict(model)), status


def create_app() -> Flask:
    app = Flask(__name__)
    # emit fields in declaration order
    app.json.sort_keys = False

    @app.get('/home')
    def home():
        return render(Greeting(message=GREETING))

    @app.get('/getsum/<a>/<b>')
    def getsum(a, b):
        operands = []
        for name, raw in (("a", a), ("b", b)):
            parsed = parse_int_prefix(raw)
            if not parsed.ok:
                raise ParameterError(name, raw)
            operands.append(parsed.value)
        return render(SumResult(ans=add(*operands)))

    @app.errorhandler(ParameterError)
    def bad_parameter(exc):
        return render(ErrorBody(error="bad_request", detail=str(exc)), 400)

    @app.errorhandler(NotFound)
    def not_found(exc):
        return render(ErrorBody(error="not_found", detail=exc.description), 404)

    @app.errorhandler(MethodNotAllowed)
    def method_not_allowed(exc):
        response, status = render(ErrorBody(error="method_not_allowed", detail=exc.description), 405)
        if exc.valid_methods:
            response.headers["Allow"] = ", ".join(exc.valid_methods)
        return response, status

    return app


app = create_app()
