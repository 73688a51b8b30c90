import pytest

from lim import interpret, BufferSink, TemplateError, ErrorKind, Settings


def render(src, **kwargs) -> str:
    sink = BufferSink()
    if isinstance(src, str):
        src = src.encode("utf-8")
    interpret(src, sink, **kwargs)
    return sink.getvalue().decode("utf-8")


@pytest.mark.parametrize("script, expect", [
    ('Hello <?lua write("world");?>', "Hello world"),
    ('<html><?lua write("First");?><br><?lua write("Second")?><?lua write "Third"', "<html>First<br>SecondThird"),
    ("<?lua for i = 1, 3, 1 do ?>Hello<?lua end ?>", "HelloHelloHello"),
    ("<?lua for i=1,3 do ?>Hi<?lua end ?>", "HiHiHi"),
    ("[[test]]", "[[test]]"),
])
def test_interpret(script, expect):
    assert render(script) == expect


def test_document_without_markers_is_reproduced_byte_for_byte():
    src = "line one\r\n\tline ]] two [=[ x ]=]\n\n\x1a) trailing ]"
    assert render(src) == src


def test_leading_newlines_survive():
    assert render("\n\nabc<?lua write(1) ?>\n") == "\n\nabc1\n"


def test_write_has_no_trailing_newline_and_print_has_one():
    assert render('<?lua write("X") ?>') == "X"
    assert render('<?lua print("X") ?>') == "X\n"


def test_write_joins_arguments_with_spaces_using_lua_tostring():
    assert render('<?lua write("a", 1, nil, true, 2.5) ?>') == "a 1 nil true 2.5"
    assert render("<?lua write() ?>") == ""


def test_loop_spans_several_text_regions():
    src = "<ul><?lua for i = 1, 2 do ?><li><?lua write(i) ?></li><?lua end ?></ul>"
    assert render(src) == "<ul><li>1</li><li>2</li></ul>"


def test_conditional_suppresses_text():
    src = "<?lua if false then ?>hidden<?lua else ?>shown<?lua end ?>"
    assert render(src) == "shown"


def test_close_marker_is_not_escaped_inside_text_brackets():
    assert render('a]]b<?lua write("]]") ?>c[[') == "a]]b]]c[["


def test_unicode_text_round_trips():
    assert render("héllo <?lua write('wörld') ?> ✓") == "héllo wörld ✓"


def test_globals_persist_between_regions():
    assert render("<?lua name = 'lim' ?>Hi <?lua write(name) ?>!") == "Hi lim!"


def test_unterminated_block_at_end_of_document_runs():
    assert render('x<?lua write("y")') == "xy"


def test_trailing_comment_in_block_keeps_following_text():
    assert render("<?lua -- comment ?>after") == "after"


def test_user_write_override_does_not_break_literal_text():
    assert render("<?lua write = nil ?>still here") == "still here"


def test_compile_error_raises_with_document_line():
    sink = BufferSink()
    with pytest.raises(TemplateError) as info:
        interpret(b"line 1\nline 2 <?lua x = = 1 ?>\n", sink, name="page.lim")
    err = info.value
    assert err.kind is ErrorKind.COMPILE
    assert err.line == 2
    assert err.path == "page.lim"
    assert err.token == "="
    assert err.format().startswith("page.lim:2: ")


def test_runtime_error_line_is_mapped_back():
    src = b"<html>\n<?lua\nlocal x = nil\nx.y = 1\n?>\n</html>"
    with pytest.raises(TemplateError) as info:
        interpret(src, BufferSink(), name="page.lim")
    err = info.value
    assert err.kind is ErrorKind.RUNTIME
    assert err.line == 4
    assert "nil" in err.message


def test_partial_output_reaches_sink_on_failure():
    sink = BufferSink()
    with pytest.raises(TemplateError):
        interpret(b'before <?lua write("mid") error("boom") ?> after', sink)
    assert sink.getvalue() == b"before mid"


def test_error_on_later_line_after_multiline_text():
    src = b"a\nb\nc\n<?lua error('late') ?>"
    with pytest.raises(TemplateError) as info:
        interpret(src, BufferSink())
    assert info.value.line == 4
    assert info.value.message == "late"


def test_unclosed_lua_construct_is_compile_error():
    with pytest.raises(TemplateError) as info:
        interpret(b"<?lua for i = 1, 2 do ?>x", BufferSink())
    assert info.value.kind is ErrorKind.COMPILE
    assert info.value.token == "<eof>"


def test_sink_is_optional():
    ctx = interpret(b"abc", None)
    assert ctx.output == b"abc"


def test_each_run_gets_a_fresh_engine():
    render("<?lua leaked = 'yes' ?>")
    assert render("<?lua write(tostring(leaked)) ?>") == "nil"


def test_pure_lua_document_by_extension():
    assert render(b'write("from script")', name="page.lua") == "from script"


def test_sandbox_removes_host_access():
    out = render("<?lua write(type(io), type(os.execute), type(os.time), type(require), type(python)) ?>")
    assert out == "nil nil function nil nil"


def test_sandbox_can_be_disabled():
    out = render("<?lua write(type(io)) ?>", settings=Settings(sandbox=False))
    assert out == "table"


def test_instruction_budget_stops_runaway_scripts():
    settings = Settings(max_instructions=100000)
    with pytest.raises(TemplateError) as info:
        interpret(b"x\n<?lua while true do end ?>", BufferSink(), settings=settings)
    assert info.value.kind is ErrorKind.RUNTIME
    assert "execution budget exceeded" in info.value.message
    assert info.value.line == 2


def test_python_attributes_are_not_reachable():
    with pytest.raises(TemplateError):
        interpret(b"<?lua write(write.__class__) ?>", BufferSink())


@pytest.mark.parametrize("src", [
    b"\xff\xfe plain",
    b"caf\xe9 \x80\n\xc3(",
])
def test_non_utf8_document_is_reproduced_byte_for_byte(src):
    sink = BufferSink()
    interpret(src, sink)
    assert sink.getvalue() == src


def test_non_utf8_text_around_script():
    sink = BufferSink()
    interpret(b"caf\xe9 <?lua write('x') ?>", sink)
    assert sink.getvalue() == b"caf\xe9 x"


def test_write_passes_lua_string_bytes_through():
    sink = BufferSink()
    interpret(b"<?lua write('\\255', '\\233t\\233') print(#'\\255') ?>", sink)
    assert sink.getvalue() == b"\xff \xe9t\xe9 1\n"


def test_runtime_error_message_with_non_utf8_bytes():
    with pytest.raises(TemplateError) as info:
        interpret(b"\xe9\n<?lua error('bad \\255 value') ?>", BufferSink())
    assert info.value.line == 2
    assert info.value.message.startswith("bad ")


def test_instruction_budget_applies_inside_coroutines():
    settings = Settings(max_instructions=100000)
    src = b"<?lua local n = 0 coroutine.wrap(function() while n < 50000000 do n = n + 1 end end)() ?>"
    with pytest.raises(TemplateError) as info:
        interpret(src, BufferSink(), settings=settings)
    assert "execution budget exceeded" in info.value.message


def test_instruction_budget_spans_caught_coroutine_failures():
    settings = Settings(max_instructions=100000)
    src = b"<?lua for i = 1, 200 do coroutine.resume(coroutine.create(function() while true do end end)) end ?>"
    with pytest.raises(TemplateError) as info:
        interpret(src, BufferSink(), settings=settings)
    assert "execution budget exceeded" in info.value.message


def test_instruction_budget_cannot_be_caught_with_pcall():
    settings = Settings(max_instructions=100000)
    src = b"x\n<?lua for i = 1, 200 do pcall(function() while true do end end) end write('survived') ?>"
    sink = BufferSink()
    with pytest.raises(TemplateError) as info:
        interpret(src, sink, settings=settings)
    assert "execution budget exceeded" in info.value.message
    assert b"survived" not in sink.getvalue()


def test_coroutines_still_work_under_a_budget():
    settings = Settings(max_instructions=100000)
    src = (b"<?lua local gen = coroutine.wrap(function() for i = 1, 3 do coroutine.yield(i) end end)"
           b" write(gen(), gen(), gen()) ?>")
    sink = BufferSink()
    interpret(src, sink, settings=settings)
    assert sink.getvalue() == b"1 2 3"
