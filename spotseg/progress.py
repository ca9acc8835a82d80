import time
from typing import Iterable, Optional


def progress_iter(iterator: Iterable, desc: str = "", total: Optional[int] = None, show: bool = False):
    """Terminal-friendly progress iterator.
    - TTY: Rich single-line bar with ETA; prints a done summary.
    - Non-TTY: milestone prints at 0/25/50/75/100%.
    """
    if not show:
        return iterator
    _desc = desc or "Working"
    if total is None:
        try:
            total = len(iterator)  # type: ignore[arg-type]
        except TypeError:
            total = None

    from rich.console import Console
    from rich.progress import (
        BarColumn,
        MofNCompleteColumn,
        Progress,
        SpinnerColumn,
        TextColumn,
        TimeElapsedColumn,
        TimeRemainingColumn,
    )
    con = Console(stderr=True)
    if con.is_terminal:
        if total is None:
            columns = [SpinnerColumn(), TextColumn(" {task.description}"), TextColumn("  elapsed:"), TimeElapsedColumn()]
        else:
            columns = [
                TextColumn("{task.description}: "), BarColumn(), MofNCompleteColumn(),
                TextColumn("  elapsed:"), TimeElapsedColumn(), TextColumn("  ETA:"), TimeRemainingColumn(),
            ]
        prog = Progress(*columns, transient=True, console=con)

        def _gen_rich():
            start_t = time.perf_counter()
            task = prog.add_task(_desc, total=total)
            c = 0
            with prog:
                for item in iterator:
                    c += 1
                    prog.update(task, completed=c)
                    yield item
            con.print(f"<< Done: {_desc} in {time.perf_counter() - start_t:0.2f}s (items={c})")
        return _gen_rich()

    milestones = [25, 50, 75, 100] if (isinstance(total, int) and total >= 20) else []

    def _gen_milestone():
        start = time.perf_counter()
        cnt = 0
        print(f">> Start: {_desc}" + (f" (0/{total})" if total else ""))
        for item in iterator:
            cnt += 1
            if total:
                perc = int(cnt * 100 / max(total, 1))
                while milestones and perc >= milestones[0]:
                    print(f"{_desc}: {milestones.pop(0)}% ({cnt}/{total})")
            yield item
        print(f"<< Done: {_desc} in {time.perf_counter() - start:0.2f}s (items={cnt})")
    return _gen_milestone()
