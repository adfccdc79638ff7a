#
# Arbitrary-precision binary floating point with a band of low-order guard bits
#
# (c) Neil Booth 2007-2021.  All rights reserved.
#

import copy
import logging
import re
import threading
from collections import namedtuple
from decimal import Decimal
from enum import IntFlag, IntEnum
from fractions import Fraction
from math import ceil, inf, isinf, isnan, isqrt, ldexp, log2
from struct import Struct

import attr

__all__ = ('Context', 'DefaultContext', 'get_context', 'set_context', 'local_context',
           'Flags', 'Compare', 'HandlerKind', 'ConversionPolicy', 'ConversionResult',
           'BigFloat', 'GUARD_BITS',
           'BigFloatError', 'Invalid', 'InvalidInitialization', 'InvalidSqrt',
           'DivisionByZero', 'DivideByZero', 'Inexact', 'Overflow',
           'IntegerKind', 'FloatKind', 'ExactKind', 'native_kind',
           'Int8', 'Int16', 'Int32', 'Int64', 'Int128',
           'UInt8', 'UInt16', 'UInt32', 'UInt64', 'UInt128', 'BigInteger',
           'Float32', 'Float64',
           'NumericTraits', 'numeric_traits', 'zero_of', 'one_of', 'dot',
           'ROUND_CEILING', 'ROUND_FLOOR', 'ROUND_DOWN', 'ROUND_UP',
           'ROUND_HALF_EVEN', 'ROUND_HALF_UP', 'ROUND_HALF_DOWN',
           'OP_ADD', 'OP_SUBTRACT', 'OP_MULTIPLY', 'OP_DIVIDE', 'OP_REMAINDER', 'OP_MOD',
           'OP_SQRT', 'OP_INVERSE', 'OP_POW',
           'OP_ADJUST_PRECISION', 'OP_CONVERT', 'OP_FROM_INT', 'OP_FROM_FLOAT',
           'OP_FROM_FLOAT32', 'OP_FROM_DECIMAL', 'OP_FROM_FRACTION',
           'OP_FROM_BINARY_DIGITS')

logger = logging.getLogger(__name__)

# The number of low-order mantissa bits that are carried but not trusted
GUARD_BITS = 32

# Rounding modes
ROUND_CEILING   = 'ROUND_CEILING'       # Towards +infinity
ROUND_FLOOR     = 'ROUND_FLOOR'         # Towards -infinity
ROUND_DOWN      = 'ROUND_DOWN'          # Torwards zero
ROUND_UP        = 'ROUND_UP'            # Away from zero
ROUND_HALF_EVEN = 'ROUND_HALF_EVEN'     # To nearest with ties towards even
ROUND_HALF_DOWN = 'ROUND_HALF_DOWN'     # To nearest with ties towards zero
ROUND_HALF_UP   = 'ROUND_HALF_UP'       # To nearest with ties away from zero


# Operation names
OP_ADD = 'add'
OP_SUBTRACT = 'subtract'
OP_MULTIPLY = 'multiply'
OP_DIVIDE = 'divide'
OP_REMAINDER = 'remainder'
OP_MOD = 'mod'                # Python
OP_SQRT = 'sqrt'
OP_INVERSE = 'inverse'
OP_POW = 'pow'
OP_ADJUST_PRECISION = 'adjust_precision'
OP_CONVERT = 'convert'
OP_FROM_INT = 'from_int'
OP_FROM_FLOAT = 'from_float'
OP_FROM_FLOAT32 = 'from_float32'
OP_FROM_DECIMAL = 'from_decimal'
OP_FROM_FRACTION = 'from_fraction'
OP_FROM_BINARY_DIGITS = 'from_binary_digits'


# Three-way result of the compare() operations.  The values are those of a signed
# comparison so they can be tested against zero.
class Compare(IntEnum):
    LESS_THAN = -1
    EQUAL = 0
    GREATER_THAN = 1


# Operation status flags.
class Flags(IntFlag):
    INVALID     = 0x01
    DIV_BY_ZERO = 0x02
    OVERFLOW    = 0x04
    INEXACT     = 0x10


# How a conversion to a native type treats a value it cannot represent.
class ConversionPolicy(IntEnum):
    CHECKED = 0           # Report failure
    SATURATING = 1        # Clamp to the closest representable extreme
    TRUNCATING = 2        # Wrap integers modulo their width; floats saturate


ConversionResult = namedtuple('ConversionResult', 'success value')
pack_single = Struct('=f').pack
unpack_single = Struct('=f').unpack

BINARY_DIGITS_REGEX = re.compile(r'([-+])?(?:([01]+)(?:\.([01]*))?|\.([01]+))$')


#
# Signals
#

class BigFloatError(ArithmeticError):
    '''All arithmetic exceptions signalled by this module subclass from this.

    BigFloatError expects two arguments:

         def __init__(self, op_tuple, result):

    op_tuple is a tuple of the operation name and operands causing the signal. result is
    the value that default exception handling should deliver, or None if the operation
    has no sensible result, in which case the exception is raised unless a handler
    substitutes a value.

    Exceptions derived from BigFloatError must have a linear inheritance from it and
    through the first base class if an exception has multiple base classes.  See, for
    example, DivisionByZero.
    '''

    flag_to_raise = 0

    @property
    def op_tuple(self):
        return self.args[0]

    @property
    def default_result(self):
        return self.args[1]

    def signal(self, context=None):
        '''Call to signal an exception.  This routine handles the exception according to
        default or alternative exception handling as specified in the context.'''
        context = context or get_context()
        kind, handler = context.handler(self.__class__)
        result = self.default_result
        logger.debug('%s signalled by %s; handling is %s', self.__class__.__name__,
                     self.op_tuple[0], kind.name)

        if kind != HandlerKind.NO_FLAG:
            context.flags |= self.flag_to_raise
            if kind == HandlerKind.RECORD_EXCEPTION:
                context.exceptions.append(self)

        if kind == HandlerKind.SUBSTITUTE_VALUE:
            return handler(self, context)
        if kind == HandlerKind.RAISE or result is None:
            raise self
        return result


#
# Invalid
#

class Invalid(BigFloatError):
    '''Invalid operation base class.  Signalled when an operation has no usefully defineable
    result.'''

    flag_to_raise = Flags.INVALID


class InvalidInitialization(Invalid, ValueError):
    '''Signalled when a value cannot be constructed: a requested precision is negative or
    the source is a NaN or an infinity.  There is never a default result.'''

    def __init__(self, op_tuple, result, reason):
        super().__init__(op_tuple, result, reason)

    @property
    def reason(self):
        return self.args[2]

    def __str__(self):
        return f'invalid BigFloat initialization: {self.reason}'


class InvalidSqrt(Invalid, ValueError):
    '''Square root of a negative value.'''


#
# DivisionByZero
#

class DivisionByZero(BigFloatError, ZeroDivisionError):
    '''Base class of division by zero errors.  Signalled when the divisor of a division or
    remainder operation has no trusted nonzero bits.'''

    flag_to_raise = Flags.DIV_BY_ZERO


class DivideByZero(DivisionByZero):
    '''A divide or remainder operation with zero divisor.'''


#
# Inexact.  Not subclassed.
#

class Inexact(BigFloatError):
    '''Signalled when nonzero bits are discarded by a precision reduction or a conversion.'''

    flag_to_raise = Flags.INEXACT


#
# Overflow.  Not subclassed.
#

class Overflow(BigFloatError):
    '''Signalled when a conversion to a native type saturates.  The default result is the
    clamped value.'''

    flag_to_raise = Flags.OVERFLOW


# Alternate exception handling

class HandlerKind(IntEnum):
    '''Indicates how a singalled exception should be handled.'''
    # Default exception handling.  This returns the default result and raises a flag.  If
    # there is no default result the exception is raised.
    DEFAULT = 0

    # Default exception handling without raising the associated flag
    NO_FLAG = 1

    # Default exception handling but also record the exception in the context
    RECORD_EXCEPTION = 3

    # Default exception handling but substitute a value for the default result.  A handler
    # must be provided with signature
    #
    #    def handler(exception, context):
    #
    # The value returned by the handler will become the operation's result.
    SUBSTITUTE_VALUE = 4

    # Raise the exception immediately
    RAISE = 7

    def requires_handler(self):
        return self == HandlerKind.SUBSTITUTE_VALUE


class Context:
    '''The execution context for operations.  Carries the rounding mode, status flags,
    the debug setting, and exception handlers.'''

    __slots__ = ('rounding', 'flags', 'debug', 'handlers', 'exceptions')

    def __init__(self, *, rounding=ROUND_HALF_UP, flags=0, debug=False):
        '''rounding is one of the ROUND_ constants and controls the rounding of inexact
        results.  flags represents the initially raised flags.  If debug is true a zero
        divisor fails an internal consistency check (AssertionError) instead of signalling
        DivideByZero.
        '''
        self.rounding = rounding
        self.flags = flags
        self.debug = debug
        self.handlers = {}
        self.exceptions = []

    def copy(self):
        '''Return a (deep) copy of the context.'''
        # Handlers and exceptions are mutable
        return copy.deepcopy(self)

    def set_handler(self, exc_classes, kind, handler=None):
        classes = (exc_classes, ) if not isinstance(exc_classes, (tuple, list)) else exc_classes
        if not all(issubclass(exc_class, BigFloatError) for exc_class in classes):
            raise TypeError('all exception classes must be subclasses of BigFloatError')
        if not isinstance(kind, HandlerKind):
            raise TypeError('kind must be a HandlerKind instance')
        if (handler is not None) ^ kind.requires_handler():
            if handler is None:
                raise ValueError(f'handler not given for kind {kind!r}')
            else:
                raise ValueError(f'handler given for kind {kind!r}')
        pair = (kind, handler)
        for exc_class in classes:
            self.handlers[exc_class] = pair

    def handler(self, exc_class):
        '''Return a (handler_kind, callback) pair for a signal class.'''
        if not issubclass(exc_class, BigFloatError):
            raise TypeError('exc_class must be a subclass of BigFloatError')

        for cls in exc_class.mro():
            handler = self.handlers.get(cls)
            if handler:
                return handler

        return HandlerKind.DEFAULT, None

    def __repr__(self):
        return f'<Context rounding={self.rounding} flags={self.flags!r} debug={self.debug}>'


# When precision is lost during a calculation these indicate what fraction of the LSB the
# lost bits represented.  It essentially combines the roles of 'guard' and 'sticky' bits.
LF_EXACTLY_ZERO = 0           # 000000
LF_LESS_THAN_HALF = 1         # 0xxxxx  x's not all zero
LF_EXACTLY_HALF = 2           # 100000
LF_MORE_THAN_HALF = 3         # 1xxxxx  x's not all zero


#
# Native numeric kinds.  These are the targets of checked, saturating and truncating
# conversions.
#

@attr.s(slots=True, frozen=True)
class IntegerKind:
    '''A native integer type.  Bounds of None mean the type is unbounded.'''
    name = attr.ib()
    min_value = attr.ib(default=None)
    max_value = attr.ib(default=None)

    @classmethod
    def signed(cls, bits):
        return cls(f'Int{bits}', -(1 << (bits - 1)), (1 << (bits - 1)) - 1)

    @classmethod
    def unsigned(cls, bits):
        return cls(f'UInt{bits}', 0, (1 << bits) - 1)

    @property
    def python_type(self):
        return int

    def contains(self, value):
        return ((self.min_value is None or value >= self.min_value) and
                (self.max_value is None or value <= self.max_value))

    def from_big_float(self, value, policy, context):
        '''Convert a BigFloat, truncating towards zero, and return a ConversionResult.'''
        result = value._to_integer(ROUND_DOWN)
        if self.contains(result):
            return ConversionResult(True, result)
        if policy == ConversionPolicy.CHECKED:
            return ConversionResult(False, None)
        if policy == ConversionPolicy.SATURATING:
            result = self.min_value if result < self.min_value else self.max_value
            op_tuple = (OP_CONVERT, value, self.name)
            return ConversionResult(True, Overflow(op_tuple, result).signal(context))
        # Two's complement wrap-around
        width = self.max_value - self.min_value + 1
        return ConversionResult(True, (result - self.min_value) % width + self.min_value)


@attr.s(slots=True, frozen=True)
class FloatKind:
    '''A native binary floating point type of the given precision and maximum exponent.'''
    name = attr.ib()
    precision = attr.ib()
    e_max = attr.ib()

    @property
    def python_type(self):
        return float

    @property
    def e_min(self):
        return 1 - self.e_max

    def from_big_float(self, value, policy, context):
        '''Convert a BigFloat, rounding it with the context's rounding mode, and return a
        ConversionResult.  Magnitudes beyond the format's range fail a checked conversion;
        otherwise they become an infinity.'''
        result, lost_fraction = value._to_native_float(self, context.rounding)
        op_tuple = (OP_CONVERT, value, self.name)
        if result is None:
            if policy == ConversionPolicy.CHECKED:
                return ConversionResult(False, None)
            result = Overflow(op_tuple, -inf if value.mantissa < 0 else inf).signal(context)
        elif lost_fraction != LF_EXACTLY_ZERO:
            result = Inexact(op_tuple, result).signal(context)
        return ConversionResult(True, result)


@attr.s(slots=True, frozen=True)
class ExactKind:
    '''A Python numeric type that can hold any BigFloat exactly.'''
    name = attr.ib()
    python_type = attr.ib()
    converter = attr.ib()

    def from_big_float(self, value, policy, context):
        return ConversionResult(True, self.converter(value))


Int8 = IntegerKind.signed(8)
Int16 = IntegerKind.signed(16)
Int32 = IntegerKind.signed(32)
Int64 = IntegerKind.signed(64)
Int128 = IntegerKind.signed(128)
UInt8 = IntegerKind.unsigned(8)
UInt16 = IntegerKind.unsigned(16)
UInt32 = IntegerKind.unsigned(32)
UInt64 = IntegerKind.unsigned(64)
UInt128 = IntegerKind.unsigned(128)
BigInteger = IntegerKind('BigInteger')
Float32 = FloatKind('Float32', 24, 127)
Float64 = FloatKind('Float64', 53, 1023)


class BigFloat(namedtuple('BigFloat', 'mantissa scale')):
    '''An immutable binary floating point value.

    mantissa is a signed integer whose low GUARD_BITS bits are guard bits: carried through
    every operation but not trusted as significant.  The value represented is

         mantissa * 2 ** (scale - GUARD_BITS)

    so scale is the binary exponent of the least significant trusted bit.  When
    constructing from a mantissa without guard bits (the default) the mantissa is shifted
    left GUARD_BITS places and the scale is left unchanged.
    '''

    __slots__ = ()

    def __new__(cls, mantissa, scale=0, includes_guard_bits=False):
        if not isinstance(mantissa, int):
            raise TypeError('mantissa must be an integer')
        if not isinstance(scale, int):
            raise TypeError('scale must be an integer')
        if not includes_guard_bits:
            mantissa <<= GUARD_BITS
        return super().__new__(cls, mantissa, scale)

    def __getnewargs__(self):
        return (self.mantissa, self.scale, True)

    ##
    ## Construction
    ##

    @classmethod
    def zero(cls):
        return cls(0)

    @classmethod
    def one(cls):
        return cls(1)

    @classmethod
    def zero_with_accuracy(cls, accuracy):
        '''Return a zero known to accuracy fractional bits.'''
        return cls(0, -accuracy)

    @classmethod
    def one_with_accuracy(cls, accuracy):
        '''Return one with its least significant trusted bit accuracy places after the binary
        point.'''
        if accuracy < -GUARD_BITS:
            raise ValueError(f'accuracy {accuracy} cannot represent one')
        return cls(1 << (GUARD_BITS + accuracy), -accuracy, True)

    @classmethod
    def int_with_accuracy(cls, value, accuracy):
        '''Return the integer value with its least significant trusted bit accuracy places
        after the binary point.  A negative accuracy rounds away low-order bits; if no bits
        of the integer are left the result is a zero with that accuracy.'''
        if not isinstance(value, int):
            raise TypeError('int_with_accuracy requires an integer')
        shift = GUARD_BITS + accuracy
        if shift >= 0:
            return cls(value << shift, -accuracy, True)
        if -shift > value.bit_length():
            return cls.zero_with_accuracy(accuracy)
        mantissa, _ = round_shift(value, -shift, ROUND_HALF_UP)
        return cls(mantissa, -accuracy, True)

    @classmethod
    def from_value(cls, value, context=None):
        '''Return a BigFloat derived from value.  Values of type int, float, Decimal and
        Fraction are accepted, and passed on to from_int, from_float, from_decimal and
        from_fraction respectively.'''
        if isinstance(value, BigFloat):
            return value
        converter = _converters.get(type(value))
        if not converter:
            raise TypeError(f'from_value cannot convert values of type {type(value)}')
        return converter(value, context=context)

    # Each factory below takes either an absolute binary_precision, or added_precision:
    # trusted bits beyond the natural precision of the source value.

    @classmethod
    def from_int(cls, value, binary_scaler=0, binary_precision=None, added_precision=None,
                 context=None):
        '''Return value * 2 ** binary_scaler.  By default the result has 32 trusted bits
        beyond those the integer needs.'''
        if not isinstance(value, int):
            raise TypeError('from_int requires an integer')
        binary_precision = requested_precision(binary_precision, added_precision,
                                               value.bit_length(), GUARD_BITS)
        op_tuple = (OP_FROM_INT, value)
        return cls._from_ratio(value, 1, binary_scaler, binary_precision, op_tuple, context)

    @classmethod
    def from_float(cls, value, binary_scaler=0, binary_precision=None, added_precision=None,
                   context=None):
        '''Return the float value * 2 ** binary_scaler, rounded to binary_precision trusted
        bits (53 by default).  NaNs and infinities are rejected.'''
        if not isinstance(value, float):
            raise TypeError('from_float requires a float')
        binary_precision = requested_precision(binary_precision, added_precision, 53, 0)
        op_tuple = (OP_FROM_FLOAT, value)
        reason = non_finite_reason(value)
        if reason:
            return cls._invalid(op_tuple, reason, context)
        numerator, denominator = value.as_integer_ratio()
        return cls._from_ratio(numerator, denominator, binary_scaler, binary_precision,
                               op_tuple, context)

    @classmethod
    def from_float32(cls, value, binary_scaler=0, binary_precision=None, added_precision=None,
                     context=None):
        '''As for from_float, but value is first rounded to single precision and the default
        precision is 24 bits.'''
        if not isinstance(value, float):
            raise TypeError('from_float32 requires a float')
        binary_precision = requested_precision(binary_precision, added_precision, 24, 0)
        op_tuple = (OP_FROM_FLOAT32, value)
        reason = non_finite_reason(value)
        if reason:
            return cls._invalid(op_tuple, reason, context)
        try:
            value, = unpack_single(pack_single(value))
        except OverflowError:
            # Beyond the single precision range; it would round to an infinity
            return cls._invalid(op_tuple, 'value is infinity', context)
        numerator, denominator = value.as_integer_ratio()
        return cls._from_ratio(numerator, denominator, binary_scaler, binary_precision,
                               op_tuple, context)

    @classmethod
    def from_decimal(cls, value, binary_scaler=0, binary_precision=None, added_precision=None,
                     context=None):
        '''Return the decimal value * 2 ** binary_scaler.  By default the result has 32 trusted
        bits beyond those needed to distinguish the decimal's digits.'''
        if not isinstance(value, Decimal):
            raise TypeError('from_decimal requires a Decimal instance')
        op_tuple = (OP_FROM_DECIMAL, value)
        reason = non_finite_reason(value)
        if reason:
            return cls._invalid(op_tuple, reason, context)
        binary_precision = requested_precision(
            binary_precision, added_precision,
            ceil(len(value.as_tuple().digits) * log2(10)), GUARD_BITS)
        numerator, denominator = value.as_integer_ratio()
        return cls._from_ratio(numerator, denominator, binary_scaler, binary_precision,
                               op_tuple, context)

    @classmethod
    def from_fraction(cls, value, binary_scaler=0, binary_precision=None, added_precision=None,
                      context=None):
        '''Return the fraction * 2 ** binary_scaler rounded to binary_precision trusted bits.'''
        if not isinstance(value, Fraction):
            raise TypeError('from_fraction requires a Fraction instance')
        binary_precision = requested_precision(
            binary_precision, added_precision,
            max(value.numerator.bit_length(), value.denominator.bit_length()), GUARD_BITS)
        op_tuple = (OP_FROM_FRACTION, value)
        return cls._from_ratio(value.numerator, value.denominator, binary_scaler,
                               binary_precision, op_tuple, context)

    @classmethod
    def from_binary_digits(cls, digits, scale=0, guard_bits=0, context=None):
        '''Construct from a string of binary digits with an optional sign and binary point,
        as produced by a parser.  The value is the digits multiplied by 2 ** scale, and the
        lowest guard_bits digits are not trusted.'''
        if not isinstance(digits, str):
            raise TypeError('from_binary_digits requires a string')
        match = BINARY_DIGITS_REGEX.match(digits)
        if match is None:
            raise ValueError(f'invalid binary digits: {digits!r}')
        sign, integer, fraction, bare_fraction = match.groups()
        if integer is None:
            integer, fraction = '', bare_fraction
        fraction = fraction or ''
        mantissa = int(integer + fraction, 2)
        if sign == '-':
            mantissa = -mantissa

        scale += guard_bits - len(fraction)
        if guard_bits <= GUARD_BITS:
            return cls(mantissa << (GUARD_BITS - guard_bits), scale, True)
        context = context or get_context()
        mantissa, _ = round_shift(mantissa, guard_bits - GUARD_BITS, context.rounding)
        return cls(mantissa, scale, True)

    @classmethod
    def _from_ratio(cls, numerator, denominator, binary_scaler, binary_precision, op_tuple,
                    context):
        '''Return numerator / denominator * 2 ** binary_scaler with binary_precision trusted
        bits.  denominator is positive.'''
        context = context or get_context()
        reason = negative_precision_reason(binary_precision)
        if reason:
            return cls._invalid(op_tuple, reason, context)
        if numerator == 0:
            return cls(0, binary_scaler - binary_precision)
        mantissa, shift, lost_fraction = divide_to_size(
            numerator, denominator, binary_precision + GUARD_BITS, context.rounding)
        result = cls(mantissa, binary_scaler - shift + GUARD_BITS, True)
        if lost_fraction != LF_EXACTLY_ZERO:
            result = Inexact(op_tuple, result).signal(context)
        return result

    @classmethod
    def _promote_int(cls, value, like):
        '''Return the integer value exactly, with at least the precision of like and no
        coarser a scale, so that arithmetic with like is as if value were a BigFloat.'''
        scale = min(0, like.scale, value.bit_length() - like.precision)
        return cls(value << (GUARD_BITS - scale), scale, True)

    @staticmethod
    def _invalid(op_tuple, reason, context):
        return InvalidInitialization(op_tuple, None, reason).signal(context)

    ##
    ## Structure
    ##

    @property
    def size_with_guard_bits(self):
        '''The bit length of the magnitude of the raw mantissa.'''
        return abs(self.mantissa).bit_length()

    @property
    def precision(self):
        '''The number of trusted significant bits.'''
        return max(0, self.size_with_guard_bits - GUARD_BITS)

    @property
    def accuracy(self):
        '''The number of trusted bits after the binary point; negative if the least trusted bit
        is to the left of the units bit.'''
        return -self.scale

    def binary_exponent(self):
        '''The exponent of the most significant raw bit.'''
        return self.size_with_guard_bits - 1 + self.scale - GUARD_BITS

    def is_zero(self):
        '''Return True if the trusted bits round to zero.'''
        return self.size_with_guard_bits < GUARD_BITS

    def is_strict_zero(self):
        '''Return True if the raw mantissa, guard bits included, is zero.'''
        return self.mantissa == 0

    def sign(self):
        '''Return -1, 0 or 1.  Values that are zero to their accuracy have sign 0.'''
        if self.is_zero():
            return 0
        return -1 if self.mantissa < 0 else 1

    def is_negative(self):
        return self.sign() < 0

    def is_integer(self):
        '''Return True if the trusted value has no fractional part.'''
        if self.scale >= 0:
            return True
        return not self._trusted() & ((1 << -self.scale) - 1)

    def _trusted(self):
        '''The mantissa with its guard bits rounded off.'''
        return round_shift(self.mantissa, GUARD_BITS, ROUND_HALF_UP)[0]

    def _trusted_at(self, scale):
        '''The trusted mantissa rounded to the given (no finer) scale.'''
        return round_shift(self.mantissa, scale - self.scale + GUARD_BITS, ROUND_HALF_UP)[0]

    ##
    ## Bit stepping
    ##

    def next_up(self):
        '''Return the value one unit greater in the least trusted bit.'''
        return BigFloat(self.mantissa + (1 << GUARD_BITS), self.scale, True)

    def next_down(self):
        '''Return the value one unit smaller in the least trusted bit.'''
        return BigFloat(self.mantissa - (1 << GUARD_BITS), self.scale, True)

    def next_up_extended(self):
        '''Return the value one unit greater in the least significant guard bit.'''
        return BigFloat(self.mantissa + 1, self.scale, True)

    def next_down_extended(self):
        '''Return the value one unit smaller in the least significant guard bit.'''
        return BigFloat(self.mantissa - 1, self.scale, True)

    def next_up_half_in_precision_bit(self):
        '''Return the value greater by half a unit in the least trusted bit, i.e. the top guard
        bit.'''
        return BigFloat(self.mantissa + (1 << (GUARD_BITS - 1)), self.scale, True)

    ##
    ## Comparisons
    ##

    def _operand(self, other):
        '''other as a BigFloat for comparison with self.'''
        converted = convert_for_arith(other, self)
        if converted is None:
            raise TypeError(f'cannot compare a BigFloat with {type(other)}')
        return converted

    def compare(self, other):
        '''Return a Compare.  Values that are zero to their accuracy compare by sign alone.
        Otherwise both are rounded to the coarser of their scales and the trusted mantissas
        compared, so guard bits only matter when they carry into the trusted bits.'''
        other = self._operand(other)
        if self.is_zero() or other.is_zero():
            lhs, rhs = self.sign(), other.sign()
            return Compare((lhs > rhs) - (lhs < rhs))
        scale = max(self.scale, other.scale)
        lhs = self._trusted_at(scale)
        rhs = other._trusted_at(scale)
        return Compare((lhs > rhs) - (lhs < rhs))

    def equals_zero_extended(self, other):
        '''Return True if the raw mantissa at the coarser scale equals the other's rounded to
        that scale; so a value equals both its zero extensions and its roundings.'''
        other = self._operand(other)
        if self.scale >= other.scale:
            coarse, fine = self, other
        else:
            coarse, fine = other, self
        mantissa, _ = round_shift(fine.mantissa, coarse.scale - fine.scale, ROUND_HALF_UP)
        return mantissa == coarse.mantissa

    def compare_ulp(self, other, ulp_tolerance=0, rounding=None):
        '''Compare ignoring guard bits.  The exact difference is measured in units of the
        least trusted bit of the coarser operand, rounded with rounding (default
        ROUND_HALF_UP; ROUND_CEILING and ROUND_FLOOR bias the measurement).  Return
        Compare.EQUAL if that is no more than ulp_tolerance.'''
        other = self._operand(other)
        fine = min(self.scale, other.scale)
        coarse = max(self.scale, other.scale)
        difference = ((self.mantissa << (self.scale - fine)) -
                      (other.mantissa << (other.scale - fine)))
        ulps, _ = round_shift(difference, coarse - fine + GUARD_BITS,
                              rounding or ROUND_HALF_UP)
        if abs(ulps) <= ulp_tolerance:
            return Compare.EQUAL
        return Compare.GREATER_THAN if ulps > 0 else Compare.LESS_THAN

    def equals_ulp(self, other, ulp_tolerance=0, rounding=None):
        return self.compare_ulp(other, ulp_tolerance, rounding) == Compare.EQUAL

    def is_less_than_ulp(self, other, ulp_tolerance=0, rounding=None):
        return self.compare_ulp(other, ulp_tolerance, rounding) == Compare.LESS_THAN

    def is_greater_than_ulp(self, other, ulp_tolerance=0, rounding=None):
        return self.compare_ulp(other, ulp_tolerance, rounding) == Compare.GREATER_THAN

    ##
    ## Precision adjustment
    ##

    def adjust_precision(self, delta, context=None):
        '''Return the value with delta trusted bits more (fewer if delta is negative).

        Extending appends zero bits.  Reducing rounds with the context's rounding mode and
        signals Inexact if nonzero bits are lost; if rounding carries into a new top bit
        the result is renormalized to the reduced size.'''
        if not isinstance(delta, int):
            raise TypeError('delta must be an integer')
        context = context or get_context()
        op_tuple = (OP_ADJUST_PRECISION, self, delta)
        if delta >= 0:
            return BigFloat(self.mantissa << delta, self.scale - delta, True)

        reason = negative_precision_reason(self.precision + delta)
        if reason:
            return self._invalid(op_tuple, reason, context)
        size = self.size_with_guard_bits + delta
        mantissa, lost_fraction = round_shift(self.mantissa, -delta, context.rounding)
        scale = self.scale - delta
        if abs(mantissa).bit_length() > size:
            mantissa >>= 1
            scale += 1
        result = BigFloat(mantissa, scale, True)
        if lost_fraction != LF_EXACTLY_ZERO:
            result = Inexact(op_tuple, result).signal(context)
        return result

    def set_precision_with_round(self, new_precision, context=None):
        '''Return the value with new_precision trusted bits, rounding if that is fewer.'''
        context = context or get_context()
        reason = negative_precision_reason(new_precision)
        if reason:
            return self._invalid((OP_ADJUST_PRECISION, self, new_precision), reason, context)
        if new_precision == self.precision:
            return self
        return self.adjust_precision(new_precision - self.precision, context)

    def extend_precision(self, bits):
        if bits < 0:
            raise ValueError('bits cannot be negative')
        return self.adjust_precision(bits)

    def truncate_by_and_round(self, bits, context=None):
        if bits < 0:
            raise ValueError('bits cannot be negative')
        return self.adjust_precision(-bits, context)

    def adjust_scale(self, delta):
        '''Return the value multiplied by 2 ** delta; the mantissa is unchanged.'''
        return BigFloat(self.mantissa, self.scale + delta, True)

    ##
    ## Arithmetic
    ##

    def add(self, other, context=None):
        '''The result has the coarser scale of the operands.  The finer operand is rounded to
        that scale; an operand lying wholly below the other's lowest guard bit is ignored.'''
        context = context or get_context()
        if self.scale - other.scale > other.size_with_guard_bits:
            return self
        if other.scale - self.scale > self.size_with_guard_bits:
            return other
        if self.scale >= other.scale:
            coarse, fine = self, other
        else:
            coarse, fine = other, self
        mantissa, _ = round_shift(fine.mantissa, coarse.scale - fine.scale, context.rounding)
        return BigFloat(coarse.mantissa + mantissa, coarse.scale, True)

    def subtract(self, other, context=None):
        return self.add(-other, context)

    def multiply(self, other, context=None):
        '''The product is rounded to the size of the smaller operand.'''
        context = context or get_context()
        product = self.mantissa * other.mantissa
        if product == 0:
            if self.mantissa:
                return BigFloat(0, other.scale + self.binary_exponent(), True)
            if other.mantissa:
                return BigFloat(0, self.scale + other.binary_exponent(), True)
            return BigFloat(0, self.scale + other.scale, True)

        size = min(self.size_with_guard_bits, other.size_with_guard_bits)
        mantissa, shift, _ = round_to_size(product, size, context.rounding)
        return BigFloat(mantissa, self.scale + other.scale + shift - GUARD_BITS, True)

    def divide(self, other, context=None):
        '''The quotient is correctly rounded to the size of the smaller operand.  A divisor
        that is zero to its accuracy is a precondition failure: an AssertionError if the
        context is in debug mode, otherwise DivideByZero is signalled.'''
        context = context or get_context()
        if other.is_zero():
            return self._divide_by_zero((OP_DIVIDE, self, other), context)
        if self.mantissa == 0:
            return BigFloat(0, self.scale - other.binary_exponent(), True)

        size = min(self.size_with_guard_bits, other.size_with_guard_bits)
        mantissa, shift, _ = divide_to_size(self.mantissa, other.mantissa, size,
                                            context.rounding)
        return BigFloat(mantissa, self.scale - other.scale - shift + GUARD_BITS, True)

    def remainder(self, other, context=None):
        '''Return the truncated remainder; its sign is that of self.  It is expressed at the
        scale of self.'''
        return self._remainder(other, False, (OP_REMAINDER, self, other), context)

    def mod(self, other, context=None):
        '''Return the floored remainder; its sign is that of other.  It is expressed at the
        scale of self.'''
        return self._remainder(other, True, (OP_MOD, self, other), context)

    def _remainder(self, other, floored, op_tuple, context):
        context = context or get_context()
        if other.is_zero():
            return self._divide_by_zero(op_tuple, context)

        # Work exactly at the finer scale
        scale = min(self.scale, other.scale)
        dividend = self.mantissa << (self.scale - scale)
        divisor = other.mantissa << (other.scale - scale)
        if abs(dividend) < abs(divisor) and not (floored and (dividend < 0) != (divisor < 0)):
            return self

        remainder = abs(dividend) % abs(divisor)
        if dividend < 0:
            remainder = -remainder
        if floored and remainder and (remainder < 0) != (divisor < 0):
            remainder += divisor

        mantissa, _ = round_shift(remainder, self.scale - scale, context.rounding)
        return BigFloat(mantissa, self.scale, True)

    @staticmethod
    def _divide_by_zero(op_tuple, context):
        logger.debug('%s with zero divisor %r', op_tuple[0], op_tuple[-1])
        if context.debug:
            raise AssertionError(f'{op_tuple[0]}: divisor {op_tuple[-1]!r} is zero')
        return DivideByZero(op_tuple, None).signal(context)

    def increment(self, context=None):
        '''Return the value plus one, or the value itself if the units bit lies above its
        lowest guard bit.'''
        if self.scale > GUARD_BITS:
            return self
        return self.add(BigFloat._promote_int(1, self), context)

    def decrement(self, context=None):
        '''Return the value minus one, or the value itself if the units bit lies above its
        lowest guard bit.'''
        if self.scale > GUARD_BITS:
            return self
        return self.add(BigFloat._promote_int(-1, self), context)

    def sqrt(self, binary_precision=None, context=None):
        '''Return the square root, correctly rounded to the size of self or to
        binary_precision trusted bits if given.  Negative values signal InvalidSqrt.'''
        context = context or get_context()
        op_tuple = (OP_SQRT, self)
        if binary_precision is None:
            size = self.size_with_guard_bits
        else:
            reason = negative_precision_reason(binary_precision)
            if reason:
                return self._invalid(op_tuple, reason, context)
            size = binary_precision + GUARD_BITS
        if self.is_zero():
            return BigFloat(0, -(-self.scale // 2), True)
        if self.mantissa < 0:
            return InvalidSqrt(op_tuple, None).signal(context)

        # Make the radicand exact with an even exponent, and long enough that the root has
        # at least one bit beyond size
        exponent = self.scale - GUARD_BITS
        shift = max(0, 2 * (size + 1) - self.size_with_guard_bits)
        if (exponent - shift) & 1:
            shift += 1
        radicand = self.mantissa << shift
        root = isqrt(radicand)
        extra = root.bit_length() - size
        mantissa, lost_fraction = shift_right(root, extra)
        if root * root != radicand:
            if lost_fraction == LF_EXACTLY_ZERO:
                lost_fraction = LF_LESS_THAN_HALF
            elif lost_fraction == LF_EXACTLY_HALF:
                lost_fraction = LF_MORE_THAN_HALF
        if round_up(context.rounding, lost_fraction, False, bool(mantissa & 1)):
            mantissa += 1
            if mantissa.bit_length() > size:
                mantissa >>= 1
                extra += 1
        return BigFloat(mantissa, (exponent - shift) // 2 + extra + GUARD_BITS, True)

    def inverse(self, context=None):
        '''Return 1 / self correctly rounded to the size of self.'''
        context = context or get_context()
        if self.is_zero():
            return self._divide_by_zero((OP_INVERSE, self), context)
        mantissa, shift, _ = divide_to_size(1, self.mantissa, self.size_with_guard_bits,
                                            context.rounding)
        return BigFloat(mantissa, 2 * GUARD_BITS - self.scale - shift, True)

    def pow(self, exponent, context=None):
        '''Return self raised to the integer exponent by repeated squaring.  Each product is
        rounded to the size of self; a negative exponent inverts the result.  The zeroth
        power is one with the precision of self.'''
        if not isinstance(exponent, int):
            raise TypeError('exponent must be an integer')
        context = context or get_context()
        if exponent == 0:
            return BigFloat.one_with_accuracy(self.precision - 1)

        result = None
        power = self
        count = abs(exponent)
        while True:
            if count & 1:
                result = power if result is None else result.multiply(power, context)
            count >>= 1
            if not count:
                break
            power = power.multiply(power, context)

        if exponent < 0:
            result = result.inverse(context)
        return result

    ##
    ## Conversions to native types
    ##

    def as_integer_ratio(self):
        '''Return the trusted value as a (numerator, denominator) pair.'''
        trusted = self._trusted()
        if self.scale >= 0:
            return trusted << self.scale, 1
        fraction = Fraction(trusted, 1 << -self.scale)
        return fraction.numerator, fraction.denominator

    def to_fraction(self):
        return Fraction(*self.as_integer_ratio())

    def to_decimal(self):
        '''Return the trusted value as an exact Decimal.'''
        trusted = self._trusted()
        if self.scale >= 0:
            return Decimal(trusted << self.scale)
        digits = abs(trusted) * 5 ** -self.scale
        return Decimal((int(trusted < 0), tuple(map(int, str(digits))), self.scale))

    def _to_integer(self, rounding):
        '''Return the trusted value rounded to an integer.'''
        return round_shift(self._trusted(), -self.scale, rounding)[0]

    def _to_native_float(self, kind, rounding):
        '''Return a (result, lost_fraction) pair where result is the trusted value rounded to
        the float kind, as a Python float, or None if it overflows.'''
        trusted = self._trusted()
        if trusted == 0:
            return 0.0, LF_EXACTLY_ZERO
        exponent = abs(trusted).bit_length() - 1 + self.scale
        lsb = max(exponent, kind.e_min) - kind.precision + 1
        significand, lost_fraction = round_shift(trusted, lsb - self.scale, rounding)
        if significand and abs(significand).bit_length() - 1 + lsb > kind.e_max:
            return None, lost_fraction
        return ldexp(significand, lsb), lost_fraction

    def try_convert_to_checked(self, kind, context=None):
        '''Convert to a native kind (or the Python type int, float, Decimal, Fraction or
        BigFloat).  Out of range values give a ConversionResult with success False.'''
        return self._convert_to(kind, ConversionPolicy.CHECKED, context)

    def try_convert_to_saturating(self, kind, context=None):
        '''Convert to a native kind.  Out of range values clamp to the kind's extreme, which
        for floats is an infinity, and signal Overflow.'''
        return self._convert_to(kind, ConversionPolicy.SATURATING, context)

    def try_convert_to_truncating(self, kind, context=None):
        '''Convert to a native kind.  Out of range integers wrap around.'''
        return self._convert_to(kind, ConversionPolicy.TRUNCATING, context)

    def _convert_to(self, kind, policy, context):
        context = context or get_context()
        return native_kind(kind).from_big_float(self, policy, context)

    @classmethod
    def try_convert_from_checked(cls, value, context=None):
        '''Return a ConversionResult.  NaNs, infinities and unsupported types fail.'''
        if isinstance(value, BigFloat):
            return ConversionResult(True, value)
        if isinstance(value, int):
            return ConversionResult(True, cls.from_int(int(value), context=context))
        if isinstance(value, (float, Decimal)):
            if non_finite_reason(value):
                return ConversionResult(False, None)
            return ConversionResult(True, cls.from_value(value, context))
        if isinstance(value, Fraction):
            return ConversionResult(True, cls.from_fraction(value, context=context))
        return ConversionResult(False, None)

    @classmethod
    def try_convert_from_saturating(cls, value, context=None):
        '''As for try_convert_from_checked; a BigFloat has no extremes to saturate to.'''
        return cls.try_convert_from_checked(value, context)

    ##
    ## Text
    ##

    def to_binary_string(self, include_guard_bits=False):
        '''Return the value in binary with a binary point if it has fractional bits.

        include_guard_bits can be True to show all guard bits, or a count of the leading guard
        bits to show.  Guard bits that would lie to the left of the binary point are never
        shown; they appear as zeroes.'''
        if include_guard_bits is True:
            guard_bits = GUARD_BITS
        else:
            guard_bits = max(0, min(GUARD_BITS, int(include_guard_bits)))
        if self.scale >= guard_bits:
            guard_bits = 0

        magnitude = abs(self.mantissa) >> (GUARD_BITS - guard_bits)
        point = guard_bits - self.scale
        if point <= 0:
            text = format(magnitude, 'b') + '0' * -point
        else:
            text = format(magnitude, f'0{point + 1}b')
            text = f'{text[:-point]}.{text[-point:]}'
        return '-' + text if self.mantissa < 0 else text

    def __repr__(self):
        return f'BigFloat({self.mantissa}, {self.scale}, includes_guard_bits=True)'

    def __str__(self):
        return self.to_binary_string()

    ##
    ## Python support - make it feel like a Python numeric data type.
    ##

    def __abs__(self):
        return BigFloat(abs(self.mantissa), self.scale, True)

    def __neg__(self):
        return BigFloat(-self.mantissa, self.scale, True)

    def __pos__(self):
        return self

    def __eq__(self, other):
        compare = compare_any(self, other)
        if compare is NotImplemented:
            return NotImplemented
        return compare == Compare.EQUAL

    def __ne__(self, other):
        compare = compare_any(self, other)
        if compare is NotImplemented:
            return NotImplemented
        return compare != Compare.EQUAL

    def __lt__(self, other):
        compare = compare_any(self, other)
        if compare is NotImplemented:
            return NotImplemented
        return compare == Compare.LESS_THAN

    def __le__(self, other):
        compare = compare_any(self, other)
        if compare is NotImplemented:
            return NotImplemented
        return compare in (Compare.EQUAL, Compare.LESS_THAN)

    def __ge__(self, other):
        compare = compare_any(self, other)
        if compare is NotImplemented:
            return NotImplemented
        return compare in (Compare.EQUAL, Compare.GREATER_THAN)

    def __gt__(self, other):
        compare = compare_any(self, other)
        if compare is NotImplemented:
            return NotImplemented
        return compare == Compare.GREATER_THAN

    def __bool__(self):
        return not self.is_zero()

    def __int__(self):
        # Same as __trunc__
        return self._to_integer(ROUND_DOWN)

    def __float__(self):
        result = self.try_convert_to_checked(Float64)
        if not result.success:
            raise OverflowError('BigFloat too large to convert to float')
        return result.value

    def __trunc__(self):
        return self._to_integer(ROUND_DOWN)

    def __floor__(self):
        return self._to_integer(ROUND_FLOOR)

    def __ceil__(self):
        return self._to_integer(ROUND_CEILING)

    def __round__(self, ndigits=None):
        '''If ndigits is None, round to an integer with ties away from zero.  Otherwise round
        after ndigits binary digits and the result is a BigFloat.
        '''
        if ndigits is None:
            return self._to_integer(ROUND_HALF_UP)
        if not isinstance(ndigits, int):
            raise TypeError('ndigits must be an integer')
        bits = -ndigits - self.scale
        if bits <= 0:
            return self
        mantissa, _ = round_shift(self.mantissa, bits + GUARD_BITS, ROUND_HALF_UP)
        return BigFloat(mantissa, -ndigits)

    def __lshift__(self, other):
        if not isinstance(other, int):
            return NotImplemented
        return self.adjust_scale(other)

    def __rshift__(self, other):
        if not isinstance(other, int):
            return NotImplemented
        return self.adjust_scale(-other)

    def __add__(self, other):
        other = convert_for_arith(other, self)
        if other is None:
            return NotImplemented
        return self.add(other)

    def __sub__(self, other):
        other = convert_for_arith(other, self)
        if other is None:
            return NotImplemented
        return self.subtract(other)

    def __mul__(self, other):
        other = convert_for_arith(other, self)
        if other is None:
            return NotImplemented
        return self.multiply(other)

    def __truediv__(self, other):
        other = convert_for_arith(other, self)
        if other is None:
            return NotImplemented
        return self.divide(other)

    def __mod__(self, other):
        other = convert_for_arith(other, self)
        if other is None:
            return NotImplemented
        return self.remainder(other)

    def __radd__(self, other):
        return self.__add__(other)

    def __rsub__(self, other):
        other = convert_for_arith(other, self)
        if other is None:
            return NotImplemented
        return other.subtract(self)

    def __rmul__(self, other):
        return self.__mul__(other)

    def __rtruediv__(self, other):
        other = convert_for_arith(other, self)
        if other is None:
            return NotImplemented
        return other.divide(self)

    def __rmod__(self, other):
        other = convert_for_arith(other, self)
        if other is None:
            return NotImplemented
        return other.remainder(self)

    def __pow__(self, other, modulo=None):
        if modulo is not None or not isinstance(other, int):
            return NotImplemented
        return self.pow(other)

    def __hash__(self):
        '''Python hash of the trusted value.  Zeroes all hash alike.

        Equality rounds to the coarser scale of the two operands, so it is not transitive
        and no hash can agree with it everywhere.  Values of the same accuracy that compare
        equal hash alike; values that compare equal only after rounding to a coarser scale
        may not.  Round them to a common precision before using them as keys.
        '''
        if self.is_zero():
            return hash(0)
        return hash(Fraction(*self.as_integer_ratio()))


_converters = {
    int: BigFloat.from_int,
    float: BigFloat.from_float,
    Decimal: BigFloat.from_decimal,
    Fraction: BigFloat.from_fraction,
}

_kinds_by_type = {
    int: BigInteger,
    float: Float64,
    Decimal: ExactKind('Decimal', Decimal, BigFloat.to_decimal),
    Fraction: ExactKind('Fraction', Fraction, BigFloat.to_fraction),
    BigFloat: ExactKind('BigFloat', BigFloat, lambda value: value),
}


def native_kind(kind):
    '''Return the conversion kind for kind, which can be a kind or a Python numeric type.'''
    if isinstance(kind, (IntegerKind, FloatKind, ExactKind)):
        return kind
    try:
        return _kinds_by_type[kind]
    except (KeyError, TypeError):
        raise TypeError(f'cannot convert a BigFloat to {kind!r}') from None


#
# Generic numeric interface
#

@attr.s(slots=True, frozen=True)
class NumericTraits:
    '''The capabilities generic algorithms need of a numeric type: its zero and one, and
    checked and saturating conversions from any supported numeric value.  The four binary
    operators are the type's own.'''
    python_type = attr.ib()
    zero = attr.ib()
    one = attr.ib()

    def create_checked(self, value, context=None):
        return self._create(value, ConversionPolicy.CHECKED, context)

    def create_saturating(self, value, context=None):
        return self._create(value, ConversionPolicy.SATURATING, context)

    def _create(self, value, policy, context):
        if isinstance(value, self.python_type) and type(value) is not bool:
            return ConversionResult(True, value)
        source = BigFloat.try_convert_from_checked(value, context)
        if not source.success or self.python_type is BigFloat:
            return source
        return source.value._convert_to(self.python_type, policy, context)


_numeric_traits = {
    BigFloat: NumericTraits(BigFloat, BigFloat.zero(), BigFloat.one()),
    int: NumericTraits(int, 0, 1),
    float: NumericTraits(float, 0.0, 1.0),
    Decimal: NumericTraits(Decimal, Decimal(0), Decimal(1)),
    Fraction: NumericTraits(Fraction, Fraction(0), Fraction(1)),
}


def numeric_traits(python_type):
    try:
        return _numeric_traits[python_type]
    except KeyError:
        raise TypeError(f'{python_type!r} is not a supported numeric type') from None


def zero_of(python_type):
    return numeric_traits(python_type).zero


def one_of(python_type):
    return numeric_traits(python_type).one


def dot(values, weights, python_type=None):
    '''Return the sum of the products of corresponding values and weights.  Works for any
    numeric type with traits.  The sum starts from the first product, so a BigFloat sum
    takes the scale of its terms.'''
    values = list(values)
    weights = list(weights)
    if len(values) != len(weights):
        raise ValueError(f'dot product of sequences of lengths {len(values)} '
                         f'and {len(weights)}')
    if not values:
        if python_type is None:
            raise ValueError('dot product of empty sequences needs a python_type')
        return zero_of(python_type)
    total = values[0] * weights[0]
    for value, weight in zip(values[1:], weights[1:]):
        total = total + value * weight
    return total


#
# Useful internal helper routines
#

def lost_bits_from_rshift(mantissa, bits):
    '''Return what the lost bits would be were the non-negative mantissa shifted right the
    given number of bits (negative is a left shift).
    '''
    if bits <= 0:
        return LF_EXACTLY_ZERO
    # Prevent over-large shifts consuming memory
    bits = min(bits, mantissa.bit_length() + 2)
    bit_mask = 1 << (bits - 1)
    first_bit = bool(mantissa & bit_mask)
    second_bit = bool(mantissa & (bit_mask - 1))
    return first_bit * 2 + second_bit


def shift_right(mantissa, bits):
    '''Return the non-negative mantissa shifted right a given number of bits (left if bits is
    negative), and the fraction that is lost doing so.
    '''
    if bits <= 0:
        result = mantissa << -bits
    else:
        result = mantissa >> bits

    return result, lost_bits_from_rshift(mantissa, bits)


def round_up(rounding, lost_fraction, sign, is_odd):
    '''Return True if, when an operation is inexact, the result should be rounded up (i.e.,
    away from zero by incrementing the magnitude).

    sign is True for negative numbers, and is_odd indicates if the LSB of the new
    magnitude is set, which is needed for ties-to-even rounding.
    '''
    if lost_fraction == LF_EXACTLY_ZERO:
        return False

    if rounding == ROUND_HALF_EVEN:
        if lost_fraction == LF_EXACTLY_HALF:
            return is_odd
        else:
            return lost_fraction == LF_MORE_THAN_HALF
    elif rounding == ROUND_CEILING:
        return not sign
    elif rounding == ROUND_FLOOR:
        return sign
    elif rounding == ROUND_DOWN:
        return False
    elif rounding == ROUND_UP:
        return True
    elif rounding == ROUND_HALF_DOWN:
        return lost_fraction == LF_MORE_THAN_HALF
    else:
        return lost_fraction != LF_LESS_THAN_HALF


def round_shift(mantissa, bits, rounding):
    '''Return a (result, lost_fraction) pair where result is the signed mantissa shifted right
    bits places (left if negative) and rounded.'''
    sign = mantissa < 0
    magnitude, lost_fraction = shift_right(-mantissa if sign else mantissa, bits)
    if round_up(rounding, lost_fraction, sign, bool(magnitude & 1)):
        magnitude += 1
    return -magnitude if sign else magnitude, lost_fraction


def round_to_size(mantissa, size, rounding):
    '''Round a nonzero mantissa so its magnitude has size bits.  Return a (mantissa, shift,
    lost_fraction) triple where shift is the number of bits removed.'''
    shift = abs(mantissa).bit_length() - size
    result, lost_fraction = round_shift(mantissa, shift, rounding)
    # A carry out of the top leaves a power of two whose low bit is zero
    if abs(result).bit_length() > size:
        result >>= 1
        shift += 1
    return result, shift, lost_fraction


def divide_to_size(numerator, denominator, size, rounding):
    '''Return a (quotient, shift, lost_fraction) triple where quotient has size bits and is
    numerator / denominator * 2 ** shift correctly rounded.  Both operands are nonzero.'''
    sign = (numerator < 0) != (denominator < 0)
    numerator, denominator = abs(numerator), abs(denominator)
    shift = size - numerator.bit_length() + denominator.bit_length()
    # The quotient now lies strictly between 2 ** (size - 1) and 2 ** (size + 1)
    if shift >= 0:
        numerator <<= shift
    else:
        denominator <<= -shift
    quotient, remainder = divmod(numerator, denominator)
    if quotient.bit_length() > size:
        remainder += (quotient & 1) * denominator
        quotient >>= 1
        denominator <<= 1
        shift -= 1

    if remainder == 0:
        lost_fraction = LF_EXACTLY_ZERO
    elif remainder * 2 < denominator:
        lost_fraction = LF_LESS_THAN_HALF
    elif remainder * 2 == denominator:
        lost_fraction = LF_EXACTLY_HALF
    else:
        lost_fraction = LF_MORE_THAN_HALF

    if round_up(rounding, lost_fraction, sign, bool(quotient & 1)):
        quotient += 1
        if quotient.bit_length() > size:
            quotient >>= 1
            shift -= 1
    return -quotient if sign else quotient, shift, lost_fraction


def negative_precision_reason(binary_precision):
    '''Return why a requested precision is invalid, or None if it is acceptable.'''
    if not isinstance(binary_precision, int):
        raise TypeError('binary_precision must be an integer')
    if binary_precision < 0:
        return f'binary_precision ({binary_precision}) cannot be negative'
    return None


def requested_precision(binary_precision, added_precision, natural, default_added):
    '''Return the trusted precision a factory should produce.  natural is the precision of
    the source value.'''
    if binary_precision is not None:
        if added_precision is not None:
            raise TypeError('binary_precision and added_precision cannot both be given')
        return binary_precision
    if added_precision is None:
        added_precision = default_added
    if not isinstance(added_precision, int):
        raise TypeError('added_precision must be an integer')
    return natural + added_precision


def non_finite_reason(value):
    '''Return why a float or Decimal cannot be represented, or None if it is finite.'''
    if isinstance(value, Decimal):
        is_nan, is_infinite = value.is_nan(), value.is_infinite()
    else:
        is_nan, is_infinite = isnan(value), isinf(value)
    if is_nan:
        return 'value is NaN'
    if is_infinite:
        return 'value is infinity'
    return None


def convert_for_arith(value, like):
    '''Convert value to something capable of doing arithmetic with the BigFloat like.

    BigFloat values are returned unmodified.  Python ints are converted exactly with at
    least the precision of like.  Floats, Decimals and Fractions are converted with their
    default precisions (a Fraction takes that of like).  Otherwise None is returned.
    '''
    if isinstance(value, BigFloat):
        return value
    if isinstance(value, int):
        return BigFloat._promote_int(value, like)
    if isinstance(value, float):
        return BigFloat.from_float(value)
    if isinstance(value, Decimal):
        return BigFloat.from_decimal(value)
    if isinstance(value, Fraction):
        return BigFloat.from_fraction(value, binary_precision=like.precision)
    return None


def compare_any(value, other):
    '''LHS is a BigFloat.  RHS is any type.  Return a Compare, None if other is a NaN, or
    NotImplemented for unsupported types.'''
    if isinstance(other, (float, Decimal)):
        reason = non_finite_reason(other)
        if reason == 'value is NaN':
            return None
        if reason:
            return Compare.LESS_THAN if other > 0 else Compare.GREATER_THAN
    converted = convert_for_arith(other, value)
    if converted is None:
        return NotImplemented
    return value.compare(converted)


#
# Exported functions
#

DefaultContext = Context()
DefaultContext.set_handler((Invalid, DivisionByZero), HandlerKind.RAISE)
tls = threading.local()


def get_context():
    try:
        return tls.context
    except AttributeError:
        tls.context = DefaultContext.copy()
        return tls.context


def set_context(context):
    '''Sets the current thread's context to context (not a copy of it).'''
    tls.context = context


class LocalContext:
    '''A context manager that will set the current context for the active thread to a copy of
    context on entry to the with-statement and restore the previous context on exit.  If
    no context is specified a copy of the current context is taken instead.
    '''

    def __init__(self, context=None):
        self.saved_context = None
        self.context_to_set = context

    def __enter__(self):
        self.saved_context = get_context()
        context = (self.context_to_set or self.saved_context).copy()
        set_context(context)
        return context

    def __exit__(self, etype, value, traceback):
        set_context(self.saved_context)


local_context = LocalContext
