import logging

import numpy as np

from rmad.errors import PreconditionError

logger = logging.getLogger('rmad.optim')


class GradientClipper:
    """Clips every gradient in place against a bound that depends on how
    unusual each entry is.

    Entries are standardized over the whole gradient, z = (g - mean) / std,
    and each g is clamped into [-c, c] with c = min(clip_value, 1 + |z|)."""

    def __init__(self, clip_value=4.0):
        self.clip_value = clip_value

    def standardize(self, gradient):
        std = gradient.std()
        if std == 0:
            return np.zeros_like(gradient)
        return (gradient - gradient.mean()) / std

    def clip(self, gradient):
        bound = np.minimum(self.clip_value, 1.0 + np.abs(self.standardize(gradient)))
        return np.clip(gradient, -bound, bound)

    def clip_layers(self, layers):
        for layer in layers:
            for name in layer.identifiers:
                gradient = layer.gradient(name)
                gradient.copy_from(self.clip(gradient.data))


class AdamOptimizer:
    """Adam with bias correction driven by its own iteration counter.

    The previous weights and moments are kept so revert() can undo the
    last optimize() exactly. With switch_gradients set the gradient's sign
    is flipped before it enters the moments, so the update climbs instead
    of descends."""

    def __init__(self, learning_rate=0.001, beta1=0.9, beta2=0.999, epsilon=1e-8):
        self.learning_rate = learning_rate
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon
        self.switch_gradients = False
        self.iteration = 1
        self._previous = None

    def optimize(self, layers):
        sign = -1.0 if self.switch_gradients else 1.0
        b1, b2 = self.beta1, self.beta2
        previous = []
        for layer in layers:
            for name in layer.identifiers:
                element = layer[name]
                w, m, v = element.weight.data, element.first_moment.data, element.second_moment.data
                g = sign * element.gradient.data
                previous.append((w, m, v, w.copy(), m.copy(), v.copy()))

                # Update biased first and second moment estimates
                m[...] = b1 * m + (1 - b1) * g
                v[...] = b2 * v + (1 - b2) * g * g

                # Bias-corrected estimates
                m_hat = m / (1 - b1 ** self.iteration)
                v_hat = v / (1 - b2 ** self.iteration)

                w -= self.learning_rate * m_hat / (np.sqrt(v_hat) + self.epsilon)

        self._previous = previous
        logger.debug(f"Adam step {self.iteration} applied to {len(previous)} weights")
        self.iteration += 1

    def revert(self):
        """Undo the last optimize(): weights, moments and the iteration counter."""
        if self._previous is None:
            raise PreconditionError("There is no update to revert")
        for w, m, v, w_old, m_old, v_old in self._previous:
            w[...] = w_old
            m[...] = m_old
            v[...] = v_old
        self._previous = None
        self.iteration -= 1
        logger.debug(f"Reverted Adam step {self.iteration}")
