from src.athrean.services.code_extract import extract_code, extract_code_block


def test_no_fence_means_no_code():
    assert extract_code_block("just prose") is None
    assert extract_code("") is None


def test_info_line_not_finished_yields_empty_body():
    block = extract_code_block("Here:\n```ts")
    assert block is not None
    assert block.code == ""
    assert not block.closed
    assert extract_code("Here:\n```ts") is None


def test_open_block_keeps_trailing_space():
    assert extract_code("Here:\n```tsx\nexport default ") == "export default "


def test_closed_block():
    text = "Here:\n```tsx\nexport default function X(){return null}\n```\nKey features"
    block = extract_code_block(text)
    assert block.closed
    assert block.language == "tsx"
    assert block.code == "export default function X(){return null}"


def test_partial_closing_fence_is_not_part_of_body():
    assert extract_code("```tsx\nconst a = 1\n``") == "const a = 1"
    assert extract_code("```tsx\nconst a = 1\n`") == "const a = 1"


def test_only_first_block_is_used():
    text = "```js\nfirst()\n```\n\n```js\nsecond()\n```"
    assert extract_code(text) == "first()"


def test_whitespace_only_body_is_none():
    assert extract_code("```tsx\n   \n```") is None


def test_inline_backticks_inside_code_survive():
    text = "```tsx\nconst s = `hi ${name}`\n```"
    assert extract_code(text) == "const s = `hi ${name}`"
