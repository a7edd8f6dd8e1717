"""Minimum-cost assignment over a square integer cost matrix.

O(n^3) Hungarian method with row/column potentials. Rows are inserted one at
a time in index order and every scan keeps the first strictly-smaller
candidate, so ties always resolve in row-major order and the result is the
same on every run.
"""

from __future__ import annotations


def solve(cost: list[list[int]]) -> list[int]:
    """Return ``assignment`` where ``assignment[row] == col`` minimises the total cost.

    ``cost`` must be square. An empty matrix yields an empty assignment.
    """
    n = len(cost)
    if n == 0:
        return []
    if any(len(row) != n for row in cost):
        raise ValueError("cost matrix must be square")

    inf = float("inf")
    # 1-based arrays; index 0 is the virtual column used while augmenting.
    u = [0] * (n + 1)
    v = [0] * (n + 1)
    owner = [0] * (n + 1)  # owner[col] = row currently assigned to col
    way = [0] * (n + 1)

    for row in range(1, n + 1):
        owner[0] = row
        col0 = 0
        minv = [inf] * (n + 1)
        used = [False] * (n + 1)
        while True:
            used[col0] = True
            row0 = owner[col0]
            delta = inf
            col1 = 0
            for col in range(1, n + 1):
                if used[col]:
                    continue
                cur = cost[row0 - 1][col - 1] - u[row0] - v[col]
                if cur < minv[col]:
                    minv[col] = cur
                    way[col] = col0
                if minv[col] < delta:
                    delta = minv[col]
                    col1 = col
            for col in range(n + 1):
                if used[col]:
                    u[owner[col]] += delta
                    v[col] -= delta
                else:
                    minv[col] -= delta
            col0 = col1
            if owner[col0] == 0:
                break
        while True:
            col1 = way[col0]
            owner[col0] = owner[col1]
            col0 = col1
            if col0 == 0:
                break

    assignment = [-1] * n
    for col in range(1, n + 1):
        if owner[col]:
            assignment[owner[col] - 1] = col - 1
    return assignment
