"""Character-level LSTM in NumPy: forward step, truncated BPTT, Adam and sampling."""

import math
import random
from collections import namedtuple

import numpy as np
from numba import njit
from tqdm import tqdm

from tensor_ops import (
    add, clip, gaussian, matmul, multiply, one_hot, ones, sigmoid, slice_rows,
    softmax, tanh, transpose, vstack, zeros, zeros_like,
)
from tokenize_data import Vocabulary

GRAD_CLIP = 5.0
LOSS_FLOOR = 1e-30
ADAM_EPS = 1e-8
SMOOTHING = 0.999
REPORT_SAMPLE_LENGTH = 12

PARAM_NAMES = ('Wf', 'bf', 'Wi', 'bi', 'Wc', 'bc', 'Wo', 'bo', 'Wv', 'bv')

Progress = namedtuple('Progress', ['epoch', 'batch_start', 'batch_end', 'smooth_loss', 'sample'])


class ConfigurationError(ValueError):
    pass


class InsufficientDataError(ValueError):
    pass


class NotTrainedError(RuntimeError):
    pass


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

class Parameters:
    """The ten LSTM matrices. Also used for gradients and Adam moments."""
    __slots__ = PARAM_NAMES

    def __init__(self, **matrices):
        for name in PARAM_NAMES:
            setattr(self, name, matrices[name])

    def items(self):
        return [(name, getattr(self, name)) for name in PARAM_NAMES]

    def zeros_like(self):
        return Parameters(**{name: zeros_like(mat) for name, mat in self.items()})

    def copy(self):
        return Parameters(**{name: mat.copy() for name, mat in self.items()})


class StepCache:
    __slots__ = ['x', 'z', 'f', 'i', 'o', 'c_bar', 'c', 'h', 'v', 'y_hat']

    def __init__(self, x, y_hat, v, h, o, c, c_bar, i, f, z):
        self.x = x
        self.z = z
        self.f = f
        self.i = i
        self.o = o
        self.c_bar = c_bar
        self.c = c
        self.h = h
        self.v = v
        self.y_hat = y_hat


class AdamState:
    __slots__ = ['m', 'v', 't']

    def __init__(self, params):
        self.m = params.zeros_like()
        self.v = params.zeros_like()
        self.t = 0


# ---------------------------------------------------------------------------
# LSTM cell
# ---------------------------------------------------------------------------

def initialize_parameters(vocab_size, n_hidden):
    std = 1.0 / math.sqrt(vocab_size + n_hidden)
    n_z = n_hidden + vocab_size
    return Parameters(
        Wf=gaussian(n_hidden, n_z, std),
        bf=ones(n_hidden, 1),  # remember by default
        Wi=gaussian(n_hidden, n_z, std),
        bi=zeros(n_hidden, 1),
        Wc=gaussian(n_hidden, n_z, std),
        bc=zeros(n_hidden, 1),
        Wo=gaussian(n_hidden, n_z, std),
        bo=zeros(n_hidden, 1),
        Wv=gaussian(vocab_size, n_hidden, 1.0 / math.sqrt(vocab_size)),
        bv=zeros(vocab_size, 1),
    )


def forward_step(x, h_prev, c_prev, p):
    """One time step. Returns (y_hat, v, h, o, c, c_bar, i, f, z)."""
    z = vstack(h_prev, x)

    f = sigmoid(add(matmul(p.Wf, z), p.bf))
    i = sigmoid(add(matmul(p.Wi, z), p.bi))
    c_bar = tanh(add(matmul(p.Wc, z), p.bc))

    c = add(multiply(f, c_prev), multiply(i, c_bar))

    o = sigmoid(add(matmul(p.Wo, z), p.bo))
    h = multiply(o, tanh(c))

    v = add(matmul(p.Wv, h), p.bv)
    y_hat = softmax(v)

    return y_hat, v, h, o, c, c_bar, i, f, z


def backward_step(y, cache, c_prev, dh_next, dc_next, p, grads):
    """Accumulate one step's gradients into `grads`, return (dh_prev, dc_prev)."""
    dv = cache.y_hat.copy()
    dv[y, 0] -= 1.0

    grads.Wv = add(grads.Wv, matmul(dv, transpose(cache.h)))
    grads.bv = add(grads.bv, dv)

    dh = add(matmul(transpose(p.Wv), dv), dh_next)

    tanh_c = tanh(cache.c)
    do = multiply(dh, tanh_c)
    da_o = multiply(multiply(cache.o, 1.0 - cache.o), do)
    grads.Wo = add(grads.Wo, matmul(da_o, transpose(cache.z)))
    grads.bo = add(grads.bo, da_o)

    dc = add(multiply(multiply(1.0 - tanh_c ** 2, cache.o), dh), dc_next)

    dc_bar = multiply(dc, cache.i)
    da_c = multiply(dc_bar, 1.0 - cache.c_bar ** 2)
    grads.Wc = add(grads.Wc, matmul(da_c, transpose(cache.z)))
    grads.bc = add(grads.bc, da_c)

    di = multiply(dc, cache.c_bar)
    da_i = multiply(multiply(cache.i, 1.0 - cache.i), di)
    grads.Wi = add(grads.Wi, matmul(da_i, transpose(cache.z)))
    grads.bi = add(grads.bi, da_i)

    df = multiply(dc, c_prev)
    da_f = multiply(multiply(cache.f, 1.0 - cache.f), df)
    grads.Wf = add(grads.Wf, matmul(da_f, transpose(cache.z)))
    grads.bf = add(grads.bf, da_f)

    dz = add(add(matmul(transpose(p.Wf), da_f), matmul(transpose(p.Wi), da_i)),
             add(matmul(transpose(p.Wc), da_c), matmul(transpose(p.Wo), da_o)))

    dh_prev = slice_rows(dz, 0, dh_next.shape[0])
    dc_prev = multiply(cache.f, dc)
    return dh_prev, dc_prev


# ---------------------------------------------------------------------------
# Truncated BPTT
# ---------------------------------------------------------------------------

def forward_backward(xs, ys, h_prev, c_prev, p):
    """Run one batch forward then backward.

    xs, ys: input and target indices, both of length seq_len.
    h_prev, c_prev: carry state entering the batch.

    Returns (loss, h, c, grads) where h, c is the carry state leaving the batch.
    """
    vocab_size = p.Wv.shape[0]
    caches = []
    loss = 0.0

    h, c = h_prev, c_prev
    for t in range(len(xs)):
        x = one_hot(int(xs[t]), vocab_size)
        y_hat, v, h, o, c, c_bar, i, f, z = forward_step(x, h, c, p)
        caches.append(StepCache(x, y_hat, v, h, o, c, c_bar, i, f, z))
        loss += -math.log(max(y_hat[int(ys[t]), 0], LOSS_FLOOR))

    grads = p.zeros_like()

    dh_next = zeros_like(h_prev)
    dc_next = zeros_like(c_prev)
    for t in range(len(xs) - 1, -1, -1):
        c_before = caches[t - 1].c if t > 0 else c_prev
        dh_next, dc_next = backward_step(int(ys[t]), caches[t], c_before,
                                         dh_next, dc_next, p, grads)

    return loss, h, c, grads


def clip_gradients(grads, limit=GRAD_CLIP):
    for name, g in grads.items():
        setattr(grads, name, clip(g, -limit, limit))
    return grads


def count_batches(num_tokens, seq_len):
    return max(num_tokens // seq_len - 1, 0)


def make_batches(tokens, seq_len):
    """Yield (start, inputs, targets) over non-overlapping windows of the trimmed stream."""
    trimmed = tokens[:(len(tokens) // seq_len) * seq_len]
    for j in range(0, len(trimmed) - seq_len, seq_len):
        yield j, trimmed[j:j + seq_len], trimmed[j + 1:j + seq_len + 1]


# ---------------------------------------------------------------------------
# Adam
# ---------------------------------------------------------------------------

@njit(cache=True)
def _adam_kernel(theta, g, m, v, beta1, beta2, lr, bias1, bias2, eps):
    """Fused in-place Adam update of one matrix (no temporaries)."""
    rows, cols = theta.shape
    for r in range(rows):
        for k in range(cols):
            gk = g[r, k]
            m[r, k] = beta1 * m[r, k] + (1.0 - beta1) * gk
            v[r, k] = beta2 * v[r, k] + (1.0 - beta2) * gk * gk
            m_hat = m[r, k] / bias1
            v_hat = v[r, k] / bias2
            theta[r, k] -= lr * m_hat / (math.sqrt(v_hat) + eps)


def adam_update(params, grads, state, learning_rate, beta1, beta2):
    """Apply one Adam step at step count `state.t` (must already be >= 1)."""
    if state.t < 1:
        raise ValueError(f"Adam step counter must be >= 1, got {state.t}")
    bias1 = 1.0 - beta1 ** state.t
    bias2 = 1.0 - beta2 ** state.t
    for name, theta in params.items():
        _adam_kernel(theta, getattr(grads, name), getattr(state.m, name), getattr(state.v, name),
                     beta1, beta2, learning_rate, bias1, bias2, ADAM_EPS)


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------

def sample_index(probabilities):
    """Draw an index from an unnormalized probability vector.

    Returns the first index whose running total exceeds u ~ U[0, total). Clamped to
    the last index when float drift leaves the total short of u.
    """
    p = np.asarray(probabilities, dtype=np.float64).ravel()
    cumsum = np.cumsum(p)
    u = random.random() * cumsum[-1]
    return min(int(np.searchsorted(cumsum, u, side='right')), len(p) - 1)


def generate(p, vocab, h, c, length, prime=None, temperature=1.0):
    """Decode `length` symbols, teacher-forcing the symbols of `prime` first."""
    if temperature <= 0.0:
        raise ValueError(f"Temperature must be greater than 0, {temperature} given.")
    vocab_size = len(vocab)
    prime_idx = [vocab.index(s) for s in prime] if prime else []
    x = zeros(vocab_size, 1)
    out = []
    for t in range(length):
        y_hat, v, h, _, c, _, _, _, _ = forward_step(x, h, c, p)
        if t < len(prime_idx):
            idx = prime_idx[t]
        else:
            probs = y_hat if temperature == 1.0 else softmax(v, temperature)
            idx = sample_index(probs)
        x = one_hot(idx, vocab_size)
        out.append(vocab.index_to_token[idx])
    return "".join(out)


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------

def _check_report_every(report_every):
    if report_every < 1:
        raise ConfigurationError(f"Report interval must be at least 1 batch, {report_every} given.")


class LSTM:
    __slots__ = ['epochs', 'learning_rate', 'n_hidden', 'seq_len', 'beta1', 'beta2',
                 'vocab', 'params', 'adam', 'smooth_loss', 'h', 'c']

    def __init__(self, epochs=200, learning_rate=0.001, n_hidden=100, seq_len=5,
                 beta1=0.9, beta2=0.999):
        if epochs <= 0:
            raise ConfigurationError(f"Number of epochs must be greater than 0, {epochs} given.")
        if learning_rate <= 0.0:
            raise ConfigurationError(f"Learning rate must be greater than 0, {learning_rate} given.")
        if n_hidden <= 0:
            raise ConfigurationError(f"Units in hidden layer must be greater than 0, {n_hidden} given.")
        if seq_len <= 0:
            raise ConfigurationError(f"Sequence length must be greater than 0, {seq_len} given.")
        if not (0.0 < beta1 < 1.0 and 0.0 < beta2 < 1.0):
            raise ConfigurationError(f"Beta 1 and Beta 2 must be in (0, 1), "
                                     f"beta1 is {beta1}, beta2 is {beta2}.")

        self.epochs = epochs
        self.learning_rate = learning_rate
        self.n_hidden = n_hidden
        self.seq_len = seq_len
        self.beta1 = beta1
        self.beta2 = beta2
        self.vocab = None
        self.params = None
        self.adam = None
        self.smooth_loss = 0.0
        self.h = None
        self.c = None

    def __repr__(self):
        desc = ", ".join(f"{k}: {v}" for k, v in self.hyperparameters().items())
        return f"Long short-term memory ({desc})"

    @property
    def vocab_size(self):
        return len(self.vocab) if self.vocab is not None else 0

    @property
    def trained(self):
        return self.params is not None

    def hyperparameters(self):
        return {
            'epochs': self.epochs,
            'learning_rate': self.learning_rate,
            'n_hidden': self.n_hidden,
            'seq_len': self.seq_len,
            'beta1': self.beta1,
            'beta2': self.beta2,
            'vocab_size': self.vocab_size,
        }

    def train(self, symbols, on_progress=None, report_every=1000, verbose=False, vocab=None):
        """Initialize parameters and train from scratch.

        The vocabulary is built from `symbols` unless a prebuilt `vocab` is given.
        """
        _check_report_every(report_every)
        symbols = list(symbols)
        if not symbols:
            raise InsufficientDataError("Dataset must not be empty.")
        if count_batches(len(symbols), self.seq_len) <= 0:
            raise InsufficientDataError(f"Dataset has not enough samples for training, "
                                        f"{len(symbols)} symbols with sequence length {self.seq_len}.")

        if vocab is None:
            vocab = Vocabulary.build(symbols)
        else:
            vocab.encode(symbols)
        self.vocab = vocab
        self.params = initialize_parameters(len(self.vocab), self.n_hidden)
        self.adam = AdamState(self.params)
        self.smooth_loss = -math.log(1.0 / len(self.vocab)) * self.seq_len
        self.h = zeros(self.n_hidden, 1)
        self.c = zeros(self.n_hidden, 1)

        self.partial(symbols, on_progress, report_every, verbose)

    def partial(self, symbols, on_progress=None, report_every=1000, verbose=False):
        """Continue training on `symbols`, starting each epoch from a zero carry state."""
        _check_report_every(report_every)
        if not self.trained:
            self.train(symbols, on_progress, report_every, verbose)
            return

        tokens = self.vocab.encode(symbols)
        if count_batches(len(tokens), self.seq_len) <= 0:
            raise InsufficientDataError(f"Dataset has not enough samples for training, "
                                        f"{len(tokens)} symbols with sequence length {self.seq_len}.")

        pbar = tqdm(range(self.epochs), desc="Training", unit="epoch", disable=not verbose)
        for epoch in pbar:
            h = zeros(self.n_hidden, 1)
            c = zeros(self.n_hidden, 1)

            for start, xs, ys in make_batches(tokens, self.seq_len):
                loss, h, c, grads = forward_backward(xs, ys, h, c, self.params)
                self.smooth_loss = self.smooth_loss * SMOOTHING + loss * (1.0 - SMOOTHING)

                clip_gradients(grads)
                self.adam.t += 1
                adam_update(self.params, grads, self.adam, self.learning_rate,
                            self.beta1, self.beta2)
                self.h, self.c = h, c

                if on_progress is not None and (start // self.seq_len) % report_every == 0:
                    text = self.sample(REPORT_SAMPLE_LENGTH, h=h, c=c)
                    on_progress(Progress(epoch, start, start + self.seq_len,
                                         self.smooth_loss, text))

            pbar.set_postfix(loss=f"{self.smooth_loss:.3f}")

    def sample(self, length, prime=None, h=None, c=None, temperature=1.0):
        if not self.trained:
            raise NotTrainedError("Model must be trained before sampling.")
        h = self.h if h is None else h
        c = self.c if c is None else c
        if h is None:
            h = zeros(self.n_hidden, 1)
            c = zeros(self.n_hidden, 1)
        return generate(self.params, self.vocab, h, c, length, prime, temperature)

    def predict(self, prefix, length=20, temperature=1.0):
        """Complete `prefix` (a sequence of symbols) to `length` symbols."""
        return self.sample(length, prime=list(prefix), temperature=temperature)
