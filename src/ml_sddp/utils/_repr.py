from __future__ import annotations
from typing import Optional, TYPE_CHECKING
import shutil

if TYPE_CHECKING:
    from ml_sddp.base import Node, PolicyGraph


PRINT_WIDTH, PRINT_HEIGHT = shutil.get_terminal_size((80, 20))

LOG_HEADERS = ("bound", "simulation", "time (s)")


def node_repr(node: Node) -> tuple[str, str, str]:
    children = ", ".join(f"{child}: {probability:g}" for child, probability in node.children)
    noise_terms = ", ".join(repr(term) for term, _ in node.noise_terms)
    cuts = getattr(node.bellman_function, "cuts", None)
    return children or "-", noise_terms, "-" if cuts is None else str(len(cuts))


def create_table(policy_graph: PolicyGraph, width: Optional[int] = None, height: Optional[int] = None) -> list[str]:
        # Prepare ...
        if width is None:
            width = PRINT_WIDTH

        if height is None:
            height = PRINT_HEIGHT

        if height <= 7:
            raise ValueError("Height too small")

        headers = ["children", "noise_terms", "cuts"]
        indices = list(policy_graph.nodes)

        index_width = max(max((len(str(index)) for index in indices), default=0), 4)  # Need to be able to fit "node"
        index_column_width = index_width + 2
        content_column_width = (width - index_column_width - len(headers)) // len(headers)
        content_width = content_column_width - 2

        #  Create repr lines ...
        repr_lines = []
        repr_lines.append(f"{type(policy_graph).__name__}(sense={policy_graph.objective_sense!r},")
        repr_lines.append(header_row := create_row("node", *headers, index_width=index_width, content_width=content_width))
        repr_lines.append("=" * len(header_row))

        root_children = ", ".join(f"{child}: {probability:g}" for child, probability in policy_graph.root_children)
        repr_lines.append(create_row(f"{policy_graph.root_node} ", root_children, "", "",
                                     index_width=index_width, content_width=content_width))

        upper_slice = indices[:max(height - 7, 0)]
        for index in upper_slice:
            row = create_row(f"{index} ", *node_repr(policy_graph.nodes[index]),
                             index_width=index_width, content_width=content_width)
            repr_lines.append(row)

        lower_slice = indices[len(upper_slice):]
        if len(lower_slice) > 2:  # Skip all but the two last rows
            skip_row = create_row('... ', *(['...'] * len(headers)), index_width=index_width, content_width=content_width)
            repr_lines.append(skip_row)
            lower_slice = lower_slice[-2:]

        for index in lower_slice:
            row = create_row(f"{index} ", *node_repr(policy_graph.nodes[index]),
                             index_width=index_width, content_width=content_width)
            repr_lines.append(row)

        repr_lines.append(")")

        return repr_lines


def create_log_header(width: Optional[int] = None) -> list[str]:
    index_width, content_width = _log_widths(width)
    header_row = create_row("iteration", *LOG_HEADERS, index_width=index_width, content_width=content_width)
    return [header_row, "=" * len(header_row)]


def create_log_row(iteration: int, bound: float, simulation_value: float, time: float,
                   width: Optional[int] = None) -> str:
    index_width, content_width = _log_widths(width)
    return create_row(f"{iteration} ", f"{bound:.6e}", f"{simulation_value:.6e}", f"{time:.2f}",
                      index_width=index_width, content_width=content_width)


def _log_widths(width: Optional[int]) -> tuple[int, int]:
    if width is None:
        width = PRINT_WIDTH
    index_width = len("iteration")
    content_column_width = (width - index_width - 2 - len(LOG_HEADERS)) // len(LOG_HEADERS)
    return index_width, content_column_width - 2


def create_row(index: str, *content: str, index_width: int, content_width: int) -> str:

    row = " " + " | ".join([
        f"{index : >{index_width}}",
        *[f"{shorten_content(content, content_width) : ^{content_width}}" for content in content]
    ])

    return row


def shorten_content(content: str, width: int, placeholder: str = "...") -> str:
    if width < len(placeholder) + 1:
        raise ValueError("Width too small")

    content_lines = content.split("\n")
    if len(content_lines) == 1:
        fini_width = 1
        ini_width = max(width - fini_width - len(placeholder), 0)

        if len(content_lines[0]) > width:
            return content_lines[0][:ini_width] + placeholder + content_lines[0][-fini_width:]
        else:
            return content_lines[0]

    else:
        ini_width = max(width - len(placeholder), 1)

        if len(content_lines[0]) + len(placeholder) > width:
            return content_lines[0][:ini_width] + placeholder
        else:
            return content_lines[0] + f"{placeholder : >{width - len(content_lines[0])}}"
