"""Plain text listing of a loaded script's control flow graph."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from .block import Block, EdgeType
from .ncsfile import NCSFile
from .stack import StackAnalysis


class ListingRenderer:
    """Render subroutines, blocks and edges one instruction per line."""

    def __init__(self, *, show_dead_edges: bool = True) -> None:
        self.show_dead_edges = show_dead_edges

    def render(self, ncs: NCSFile) -> str:
        lines: List[str] = [f"; script size {ncs.size} bytes, {len(ncs.instructions)} instructions"]
        roles = [
            ("start", ncs.start_subroutine),
            ("global", ncs.global_subroutine),
            ("main", ncs.main_subroutine),
        ]
        for label, subroutine in roles:
            value = f"0x{subroutine.address:08X}" if subroutine is not None else "-"
            lines.append(f"; {label}: {value}")
        if ncs.has_multiple_global:
            lines.append("; warning: more than one global initialiser candidate")

        analysis = ncs.stack_analysis
        if analysis is not None:
            status = "ok" if analysis.success else f"failed ({analysis.error})"
            lines.append(
                f"; stack analysis: {status}, {len(analysis.variables)} variables, "
                f"{len(analysis.globals)} globals"
            )

        for subroutine in ncs.subroutines:
            lines.append("")
            callers = ", ".join(f"0x{c.address:08X}" for c in subroutine.callers) or "-"
            lines.append(f"{subroutine.name}: ; type={subroutine.type.value} callers={callers}")
            for block in subroutine.blocks:
                lines.extend(self._render_block(block, analysis))

        orphans = [block for block in ncs.blocks if block.subroutine is None]
        if orphans:
            lines.append("")
            lines.append("; code outside any subroutine")
            for block in orphans:
                lines.extend(self._render_block(block, analysis))

        unreachable = ncs.unreachable_blocks()
        if unreachable:
            lines.append("")
            lines.append(
                "; unreachable blocks: "
                + ", ".join(f"0x{block.address:08X}" for block in unreachable)
            )
        return "\n".join(lines) + "\n"

    def _render_block(self, block: Block, analysis: Optional[StackAnalysis]) -> List[str]:
        header = f"  ; block 0x{block.address:08X}"
        if block.parents:
            header += " from " + ", ".join(f"0x{p.address:08X}" for p in block.parents)
        if analysis is not None and analysis.depth_at(block) is not None:
            header += f" depth={analysis.depth_at(block)}"
        lines = [header]
        for instruction in block.instructions:
            lines.append("    " + instruction.format())
        for child, edge_type in zip(block.children, block.children_types):
            if edge_type is EdgeType.DEAD and not self.show_dead_edges:
                continue
            lines.append(f"    ; -> 0x{child.address:08X} ({edge_type.value})")
        return lines

    def write(self, ncs: NCSFile, output_path: Path) -> None:
        output_path.write_text(self.render(ncs), "utf-8")
