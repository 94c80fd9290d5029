"""
Integration tests running every supported language through the full orchestrator.

Each backend is exercised when it is usable on this host: the subprocess
backend needs the language toolchains on PATH, the Docker backend a running
daemon with the runtime images pulled.
"""
import shutil

import pytest

from codejudge.config import JudgeConfig
from codejudge.core.execution.result import Outcome
from codejudge.core.orchestrator import Orchestrator
from codejudge.exceptions import InstanceError

PROGRAMS = {
    "python": "a, b = map(int, input().split())\nprint(a + b)\n",
    "javascript": (
        "const [a, b] = require('fs').readFileSync(0, 'utf8').trim().split(/\\s+/).map(Number);\n"
        "console.log(a + b);\n"
    ),
    "c": '#include <stdio.h>\nint main(){int a,b;scanf("%d %d",&a,&b);printf("%d\\n",a+b);return 0;}\n',
    "cpp": "#include <iostream>\nint main(){int a,b;std::cin>>a>>b;std::cout<<a+b<<std::endl;}\n",
    "java": (
        "import java.util.Scanner;\n"
        "public class Adder { public static void main(String[] args) {\n"
        "  Scanner s = new Scanner(System.in);\n"
        "  System.out.println(s.nextInt() + s.nextInt());\n"
        "} }\n"
    ),
}

FORK_UNTIL_REFUSED = """
import os, time
forked = 0
while forked < 1000:
    try:
        pid = os.fork()
    except OSError:
        break
    if pid == 0:
        os.close(1)
        os.close(2)
        time.sleep(10)
        os._exit(0)
    forked += 1
print(forked)
"""

TOOLCHAINS = {
    "python": "python3",
    "javascript": "node",
    "c": "gcc",
    "cpp": "g++",
    "java": "javac",
}


def _orchestrator(backend):
    try:
        orchestrator = Orchestrator(JudgeConfig(backend=backend, max_instances=2, queue_depth=8))
        orchestrator.initialize()
    except InstanceError as e:
        pytest.skip(f"{backend} backend unavailable: {e}")
    if backend == "subprocess" and orchestrator.pool.backend.cgroups is None:
        orchestrator.cleanup()
        pytest.skip("subprocess backend has no delegated cgroup v2 subtree")
    return orchestrator


@pytest.fixture(scope="module", params=["subprocess", "docker"])
def orchestrator(request):
    orchestrator = _orchestrator(request.param)
    yield orchestrator
    orchestrator.cleanup()


@pytest.mark.integration
class TestLanguages:
    @pytest.mark.parametrize("language", sorted(PROGRAMS))
    def test_sum(self, orchestrator, language):
        if orchestrator.config.backend == "subprocess" and shutil.which(TOOLCHAINS[language]) is None:
            pytest.skip(f"{TOOLCHAINS[language]} not installed")

        result = orchestrator.execute(language, PROGRAMS[language], stdin="2 40\n", timeout=120)

        assert result.outcome == Outcome.SUCCESS, result.to_dict()
        assert result.stdout.strip() == "42"


@pytest.mark.integration
class TestLimits:
    def test_infinite_loop_times_out(self, orchestrator):
        result = orchestrator.execute(
            "python", "while True: pass", limits={"wall_ms": 1000, "cpu_ms": 1000}, timeout=60,
        )
        assert result.outcome == Outcome.TIMEOUT

    def test_memory_hog(self, orchestrator):
        result = orchestrator.execute(
            "python",
            "x = bytearray(1024 * 1024 * 1024)\nprint(len(x))",
            limits={"memory_bytes": 128 * 1024 * 1024},
            timeout=60,
        )
        assert result.outcome == Outcome.MEMORY_EXCEEDED

    def test_native_memory_hog(self, orchestrator):
        if orchestrator.config.backend == "subprocess" and shutil.which("gcc") is None:
            pytest.skip("gcc not installed")
        source = (
            "#include <stdlib.h>\n#include <string.h>\n"
            "int main(){ for(;;){ char *p = malloc(16 << 20); if(!p) return 3; memset(p, 1, 16 << 20); } }\n"
        )
        result = orchestrator.execute("c", source, limits={"memory_bytes": 128 * 1024 * 1024}, timeout=60)
        assert result.outcome == Outcome.MEMORY_EXCEEDED, result.to_dict()

    def test_output_flood(self, orchestrator):
        result = orchestrator.execute(
            "python", "print('x' * 1000000)", limits={"max_output_bytes": 4096}, timeout=60,
        )
        assert result.outcome == Outcome.OUTPUT_TRUNCATED
        assert len(result.stdout) == 4096

    def test_compile_error(self, orchestrator):
        if orchestrator.config.backend == "subprocess" and shutil.which("gcc") is None:
            pytest.skip("gcc not installed")
        result = orchestrator.execute("c", "int main() { return 0 }", timeout=60)

        assert result.outcome == Outcome.COMPILE_ERROR
        assert result.compile_log

    def test_process_ceiling_stops_forking(self, orchestrator):
        result = orchestrator.execute(
            "python", FORK_UNTIL_REFUSED, limits={"wall_ms": 5000, "max_processes": 16}, timeout=60,
        )
        assert result.outcome == Outcome.SUCCESS, result.to_dict()
        assert 0 < int(result.stdout) < 16
