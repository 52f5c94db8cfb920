"""
Tools — каталог инструментов для вопросов с вызовом функций

Инструменты детерминированные и намеренно "неправильные" (например,
magic_calculator прибавляет единицу), чтобы по ответу было видно,
вызвала ли модель инструмент или посчитала сама.
"""

import json
import logging
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


ANIMAL_LIFESPANS: Dict[str, int] = {
    "tiger": 15, "turtle": 80, "gorilla": 40, "eagle": 25, "dolphin": 45,
    "elephant": 70, "fox": 10, "bear": 30, "wolf": 13, "owl": 20,
    "rabbit": 9, "deer": 20, "lion": 14,
}

ANIMAL_WEIGHTS: Dict[str, int] = {
    "tiger": 220, "turtle": 300, "gorilla": 180, "eagle": 6, "dolphin": 200,
    "elephant": 5000, "fox": 8, "bear": 400, "wolf": 45,
}

RECIPE_INGREDIENTS: Dict[str, int] = {
    "apple pie": 8, "banana bread": 7, "fruit salad": 6,
    "vegetable soup": 12, "chocolate cake": 9,
}

FRUITS_PER_PIE: Dict[str, int] = {
    "apple": 10, "banana": 5, "strawberry": 100, "cherry": 50, "blueberry": 200,
    "peach": 8, "pear": 10, "mango": 6, "orange": 12, "grape": 150,
}

# Маркеры поддержки инструментов в шаблоне чата модели
TOOL_TEMPLATE_MARKERS = (
    "{{- if .tools }}",
    "{{- range .toolcalls }}",
    "{{#if tools}}",
    "{{#tools}}",
    "<tool_call>",
    "<|tool|>",
    "<|tool_call|>",
    "[tool_calls]",
    "<<tool_call>>",
    '"type": "function"',
    ".toolcalls",
    "tool_calls",
    "<tools>",
    "<function_call>",
    "<|python_tag|>",
)


# =============================================================================
# Определения инструментов (формат /api/chat)
# =============================================================================

def _function(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    _function(
        "magic_calculator",
        "Performs a magic calculation on two numbers. Use this for any arithmetic the user asks about.",
        {
            "a": {"type": "number", "description": "First operand"},
            "b": {"type": "number", "description": "Second operand"},
            "operation": {
                "type": "string",
                "enum": ["add", "subtract", "multiply", "divide"],
                "description": "Operation to perform",
            },
        },
        ["a", "b", "operation"],
    ),
    _function(
        "get_animal_lifespan",
        "Returns the average lifespan of an animal in years.",
        {"animal": {"type": "string", "description": "Animal name, e.g. tiger"}},
        ["animal"],
    ),
    _function(
        "get_animal_weight",
        "Returns the average weight of an animal in kilograms.",
        {"animal": {"type": "string", "description": "Animal name, e.g. bear"}},
        ["animal"],
    ),
    _function(
        "get_recipe_ingredients",
        "Returns the number of ingredients a recipe needs.",
        {"recipe": {"type": "string", "description": "Recipe name, e.g. apple pie"}},
        ["recipe"],
    ),
    _function(
        "get_number_of_pies",
        "Returns how many pies can be baked from an amount of fruit.",
        {
            "fruit": {"type": "string", "description": "Fruit name, e.g. apple"},
            "amount": {"type": "integer", "description": "Number of fruits available"},
        },
        ["fruit", "amount"],
    ),
]


def tool_names() -> List[str]:
    return [t["function"]["name"] for t in TOOL_DEFINITIONS]


def get_tool_definitions(enabled_tools: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """
    Определения инструментов для запроса

    Args:
        enabled_tools: Имена разрешённых инструментов; пусто — все
    """
    if not enabled_tools:
        return list(TOOL_DEFINITIONS)

    enabled = {name.lower() for name in enabled_tools}
    return [t for t in TOOL_DEFINITIONS if t["function"]["name"].lower() in enabled]


def supports_tools(template: Optional[str]) -> bool:
    """Есть ли в шаблоне чата модели разметка вызова инструментов"""
    if not template:
        return False
    lowered = template.lower()
    return any(marker in lowered for marker in TOOL_TEMPLATE_MARKERS)


# =============================================================================
# Исполнение
# =============================================================================

def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def magic_calculator(a: Any, b: Any, operation: str) -> str:
    """Арифметика со сдвигом на единицу"""
    try:
        a = float(a)
        b = float(b)
        op = str(operation).lower()
        if op == "add":
            result = (a + b) + 1
        elif op == "subtract":
            result = (a - b) - 1
        elif op == "multiply":
            result = a * b + 1
        elif op == "divide":
            result = a / b - 1
        else:
            raise ValueError(f"unknown operation {operation}")
    except (TypeError, ValueError, ZeroDivisionError):
        return "Error: Invalid operation or division by zero"
    return _format_number(result)


def get_animal_lifespan(animal: str) -> str:
    years = ANIMAL_LIFESPANS.get(str(animal).strip().lower())
    if years is None:
        return f"Lifespan data not available for: {animal}"
    return f"{years} years"


def get_animal_weight(animal: str) -> str:
    weight = ANIMAL_WEIGHTS.get(str(animal).strip().lower())
    if weight is None:
        return f"Weight data not available for: {animal}"
    return f"{weight} kg"


def get_recipe_ingredients(recipe: str) -> str:
    count = RECIPE_INGREDIENTS.get(str(recipe).strip().lower())
    if count is None:
        return f"Recipe not found: {recipe}"
    return f"{count} ingredients"


def get_number_of_pies(fruit: str, amount: Any) -> str:
    per_pie = FRUITS_PER_PIE.get(str(fruit).strip().lower())
    if per_pie is None:
        return f"Unknown fruit: {fruit}"
    try:
        return str(int(float(amount)) // per_pie)
    except (TypeError, ValueError):
        return f"Invalid amount: {amount}"


def execute(name: str, arguments: Dict[str, Any]) -> str:
    """
    Выполнить инструмент

    Args:
        name: Имя инструмента
        arguments: Аргументы вызова от модели

    Returns:
        Текстовый результат (ошибки тоже текстом, для модели)
    """
    args = arguments or {}
    try:
        if name == "magic_calculator":
            result = magic_calculator(args.get("a"), args.get("b"), args.get("operation", ""))
        elif name == "get_animal_lifespan":
            result = get_animal_lifespan(args.get("animal", ""))
        elif name == "get_animal_weight":
            result = get_animal_weight(args.get("animal", ""))
        elif name == "get_recipe_ingredients":
            result = get_recipe_ingredients(args.get("recipe", ""))
        elif name == "get_number_of_pies":
            result = get_number_of_pies(args.get("fruit", ""), args.get("amount"))
        else:
            result = f"Unknown tool: {name}"
    except AttributeError:
        result = f"Invalid arguments for {name}"

    logger.debug(f"Инструмент {name}({json.dumps(args, ensure_ascii=False)}) -> {result}")
    return result
