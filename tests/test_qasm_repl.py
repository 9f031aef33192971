import io

from qasm_engine import Engine
from qasm_interpreter import Interpreter, Session
import qasm_repl


def scripted(lines, prompts=None):
    it = iter(lines)

    def read(prompt):
        if prompts is not None:
            prompts.append(prompt)
        item = next(it, EOFError)
        if isinstance(item, type) and issubclass(item, BaseException):
            raise item
        return item

    return read


def make_interpreter():
    return Interpreter(Session(Engine(seed=2)), out=io.StringIO(), err=io.StringIO())


def test_run_stops_on_quit():
    interp = make_interpreter()
    read = scripted(["qreg q[1]", ":quit", "x q[0]"])
    assert qasm_repl.run(interp, read) == 0
    assert interp.session.state.num_qubits == 1
    assert interp.session.state.ops == []


def test_run_stops_on_end_of_input():
    interp = make_interpreter()
    assert qasm_repl.run(interp, scripted(["qreg q[1]", "h q[0]"])) == 0
    assert len(interp.session.state.ops) == 1


def test_run_uses_block_prompt_while_capturing():
    interp = make_interpreter()
    prompts = []
    qasm_repl.run(interp, scripted([":loop 2", "h q[0]", ":end"], prompts))
    assert prompts == [qasm_repl.PROMPT, qasm_repl.BLOCK_PROMPT, qasm_repl.BLOCK_PROMPT, qasm_repl.PROMPT]


def test_keyboard_interrupt_clears_capture():
    interp = make_interpreter()
    read = scripted(["qreg q[1]", ":loop 2", KeyboardInterrupt, "x q[0]"])
    qasm_repl.run(interp, read)
    assert [op.name for op in interp.session.state.ops] == ["x"]


def test_build_parser_defaults():
    args = qasm_repl.build_parser().parse_args([])
    assert args.input is None
    assert args.dbg is False
    assert args.history.endswith(".qasm_repl_history")


def test_main_fails_on_missing_input(tmp_path, capsys):
    code = qasm_repl.main(["--input", str(tmp_path / "missing.qasm"), "--history", str(tmp_path / "h")])
    assert code == 1
    assert "LoadError" in capsys.readouterr().err


def test_main_runs_script_until_quit(tmp_path, capsys):
    script = tmp_path / "run.qasm"
    script.write_text("qreg q[1]; creg c[1]\nx q[0]\nmeasure q -> c\n:go\n:class\n:quit\n")
    code = qasm_repl.main(["-i", str(script), "--history", str(tmp_path / "h")])
    assert code == 0
    out = capsys.readouterr().out
    assert "CReg: 1" in out
