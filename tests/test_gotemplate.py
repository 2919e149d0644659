import pytest

from txmanager.gotemplate import Template, TemplateError


def test_plain_text_passes_through():
    assert Template("hello world").render(None) == "hello world"


def test_field_chain_and_float_formatting():
    tpl = Template('{"unit":"gwei","value":{{ .standard.maxPriorityFee }}}')
    data = {"standard": {"maxPriorityFee": 32.146027800733336}}
    assert tpl.render(data) == '{"unit":"gwei","value":32.146027800733336}'


def test_large_float_uses_exponent():
    assert Template("{{ .n }}").render({"n": 24962816.0}) == "2.4962816e+07"


def test_string_dot():
    assert Template("{{ . }}").render("abc") == "abc"


def test_len_pipe():
    assert Template("{{ .items | len }}").render({"items": [1, 2, 3]}) == "3"


def test_missing_key_prints_no_value():
    assert Template("{{ .missing }}").render({}) == "<no value>"


def test_unclosed_action():
    with pytest.raises(TemplateError):
        Template("{{ !!! wrong")


def test_field_on_nil_fails():
    with pytest.raises(TemplateError):
        Template("{{ .wrong.thing | len }}").render({})


def test_trim_markers():
    assert Template("a  {{- .x -}}  b").render({"x": "X"}) == "aXb"