def make_message(name: str) -> str:
    return f"Hello, {name}, from inside a lockpack container!"
