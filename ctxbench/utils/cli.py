"""
cli utilities - форматирование cli
"""

def print_section(title: str):
    """Вывести заголовок секции"""
    print()
    print("=" * 60)
    print(f" {title}")
    print("=" * 60)


def print_kv(label: str, value: str, indent: int = 2):
    """Вывести пару ключ-значение с выравниванием"""
    print(" " * indent + f"{label}: {value}")


def format_duration(seconds: float) -> str:
    """Форматировать длительность для вывода"""
    if seconds < 1:
        return f"{seconds * 1000:.0f}мс"
    if seconds < 60:
        return f"{seconds:.1f}с"
    minutes, rest = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}м {rest}с"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}ч {minutes}м"
