from subprocess import check_output

import nox


@nox.session(python=["3.13", "3.12", "3.11", "3.10", "3.9"])
@nox.parametrize(
    "container_runtime",
    [nox.param(runtime, id=runtime) for runtime in ("podman", "docker")],
)
def test(session: nox.Session, container_runtime: str):
    session.install(".[test]")
    session.run(
        "coverage",
        "run",
        "-m",
        "pytest",
        "-vv",
        "tests",
        *session.posargs,
        env={"CONTAINER_RUNTIME": container_runtime}
    )


@nox.session()
def coverage(session: nox.Session):
    session.install("coverage")
    session.run("coverage", "combine")
    session.run("coverage", "report", "-m")
    session.run("coverage", "xml")


@nox.session()
def lint(session: nox.Session):
    session.install("mypy", "pylint", "types-requests", ".[test]")
    session.run("mypy", "pytest_testcontainer")
    session.run(
        "pylint", "--fail-under", "9.0", "pytest_testcontainer", "tests/"
    )


@nox.session()
def format(session: nox.Session):
    session.install("black", "reorder-python-imports")

    args = ["--check", "--diff"] if "--check" in session.posargs else []
    session.run("black", ".", *args)
    files = check_output(["git", "ls-files"]).decode().strip().splitlines()
    for f in files:
        if f.endswith(".py"):
            success_codes = [0] if args else [0, 1]
            session.run(
                "reorder-python-imports", f, success_codes=success_codes
            )
