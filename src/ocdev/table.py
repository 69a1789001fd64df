"""Table rendering for ocdev listings."""

import click


def draw_table(rows: list[dict[str, str]], columns: list[str], empty_message: str | None = None) -> None:
    """Print rows under a header, sizing each column to its widest value.

    Args:
        rows: One dictionary per row, keyed by column name.
        columns: Column names in display order; also used as the header.
        empty_message: Printed instead of the header when there are no rows.
            With no message, nothing is printed.
    """
    if not rows:
        if empty_message:
            click.echo(empty_message)
        return

    widths = {col: max([len(col)] + [len(row.get(col, "")) for row in rows]) for col in columns}

    def format_row(values: dict[str, str]) -> str:
        return "  ".join(f"{values.get(col, ''):<{widths[col]}}" for col in columns).rstrip()

    click.echo(format_row({col: col for col in columns}))
    click.echo("-" * (sum(widths.values()) + 2 * (len(columns) - 1)))
    for row in rows:
        click.echo(format_row(row))
