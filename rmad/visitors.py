import enum
import logging
import threading

from rmad.errors import AggregateBackwardError, PreconditionError, RmadError

logger = logging.getLogger('rmad.visitors')


def _reachable(start_node):
    """Every node reachable backward from start_node, each once."""
    seen = {id(start_node): start_node}
    stack = [start_node]
    while stack:
        node = stack.pop()
        for adjacent in node.backward_adjacent:
            if adjacent is not None and id(adjacent) not in seen:
                seen[id(adjacent)] = adjacent
                stack.append(adjacent)
    return list(seen.values())


class GraphDependencyVisitor:
    """Counts, for every node reachable from start_node, how many gradient
    contributions it will receive when backward starts there.

    A node is expanded the first time it is discovered; later discoveries
    only bump its counter. Counts are stored under starting_point_index so
    a graph with several loss injection points keeps one count per point.
    Running the visitor again yields the same counts."""

    def __init__(self, start_node, starting_point_index=0):
        if start_node is None:
            raise PreconditionError("GraphDependencyVisitor needs a start node")
        if starting_point_index < 0:
            raise PreconditionError(f"starting_point_index must be >= 0, got {starting_point_index}")
        self.start_node = start_node
        self.starting_point_index = starting_point_index

    def traverse(self):
        visited = [self.start_node]
        # The start node receives the externally injected gradient
        self.start_node.visited_count += 1
        stack = [self.start_node]
        while stack:
            node = stack.pop()
            for adjacent in node.backward_adjacent:
                if adjacent is None:
                    continue
                adjacent.visited_count += 1
                if adjacent.visited_count == 1:
                    visited.append(adjacent)
                    stack.append(adjacent)

        for node in visited:
            node.dependency_counts[self.starting_point_index] = node.visited_count
            node.visited_count = 0

        logger.debug(f"Dependency counts computed for {len(visited)} nodes "
                     f"(starting point {self.starting_point_index})")
        return len(visited)


class FailurePolicy(enum.Enum):
    """What a concurrent backward traversal does with subtree failures."""
    TOLERATE_SINGLE = "tolerate_single"  # log one, raise on two or more
    FAIL_ON_ANY = "fail_on_any"
    BEST_EFFORT = "best_effort"  # log all, never raise


class BackwardVisitor:
    """Runs backward from start_node.

    Each node accumulates incoming gradients and fires its own backward
    exactly once, when the number of contributions reaches the dependency
    count set by GraphDependencyVisitor. Sequential mode walks depth-first
    in input order and raises the first error. Concurrent mode gives every
    extra input subtree its own thread and applies failure_policy to what
    the subtrees collected; errors before the first fan-out, and any
    RmadError, are always raised. A traversal that raises clears the visit
    state of every reachable node. Writes into shared gradient buffers go
    through one lock held by the visitor."""

    def __init__(self, start_node, starting_point_index=0, run_sequentially=True,
                 failure_policy=FailurePolicy.TOLERATE_SINGLE):
        if start_node is None:
            raise PreconditionError("BackwardVisitor needs a start node")
        self.start_node = start_node
        self.starting_point_index = starting_point_index
        self.run_sequentially = run_sequentially
        self.failure_policy = FailurePolicy(failure_policy)
        self.aggregate_error = None
        self._errors = []
        self._errors_lock = threading.Lock()
        self._gradient_lock = threading.Lock()

    def traverse(self, gradient):
        self.aggregate_error = None
        self._errors = []
        try:
            if self.run_sequentially:
                self._traverse_sequential(gradient)
            else:
                self._traverse_concurrent(self.start_node, gradient)
                self._apply_failure_policy()
        except Exception:
            # a failed pass leaves no partial contributions behind
            self._reset_nodes()
            raise

    def _visit(self, node, gradient):
        """Deliver one contribution. Returns (adjacent, gradient) pairs to
        continue with if the node fired, else an empty list."""
        with node.lock:
            required = node.dependency_counts.get(self.starting_point_index)
            if required is None:
                raise PreconditionError(
                    f"{node!r} has no dependency count for starting point "
                    f"{self.starting_point_index}; run GraphDependencyVisitor first")
            node.receive_gradient(gradient)
            node.visited_count += 1
            if node.visited_count > required:
                raise PreconditionError(
                    f"{node!r} received {node.visited_count} gradient contributions, expected {required}")
            if node.visited_count < required:
                return []
            node.is_complete = True

        results = node.run_backward(self._gradient_lock)
        return [(adjacent, results[i] if i < len(results) else None)
                for i, adjacent in enumerate(node.backward_adjacent)
                if adjacent is not None]

    def _traverse_sequential(self, gradient):
        stack = [(self.start_node, gradient)]
        while stack:
            node, incoming = stack.pop()
            children = self._visit(node, incoming)
            # reversed so the first input is processed first
            stack.extend(reversed(children))

    def _traverse_concurrent(self, node, gradient):
        """Errors on this chain propagate to the caller. Once the chain fans
        out, every input subtree is a branch whose failure is collected."""
        children = self._visit(node, gradient)
        # follow a single chain inline, fan out only when it branches
        while len(children) == 1:
            (child, child_gradient), = children
            children = self._visit(child, child_gradient)

        if not children:
            return

        threads = [threading.Thread(target=self._traverse_subtree, args=child, daemon=True)
                   for child in children[1:]]
        for thread in threads:
            thread.start()
        self._traverse_subtree(*children[0])
        for thread in threads:
            thread.join()

    def _traverse_subtree(self, node, gradient):
        try:
            self._traverse_concurrent(node, gradient)
        except Exception as e:
            with self._errors_lock:
                self._errors.append(e)

    def _apply_failure_policy(self):
        if not self._errors:
            return
        errors = list(self._errors)
        self.aggregate_error = AggregateBackwardError(
            f"backward traversal failed in {len(errors)} subtree(s)", errors)

        # precondition and shape errors are graph bugs, never tolerated
        if any(isinstance(e, RmadError) for e in errors):
            raise self.aggregate_error
        if self.failure_policy is FailurePolicy.FAIL_ON_ANY:
            raise self.aggregate_error
        if self.failure_policy is FailurePolicy.TOLERATE_SINGLE and len(errors) > 1:
            raise self.aggregate_error

        for error in errors:
            logger.error(f"Backward subtree failed and was tolerated: {error!r}")

    def _reset_nodes(self):
        for node in _reachable(self.start_node):
            node.reset()

    def reset(self):
        """Clear visit state on every reachable node so the graph can run again."""
        self._reset_nodes()
        self._errors = []
        self.aggregate_error = None
