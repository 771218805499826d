from lxml import etree

from ksefsend import ksefError

EXC_C14N = 'http://www.w3.org/2001/10/xml-exc-c14n#'
C14N = 'http://www.w3.org/TR/2001/REC-xml-c14n-20010315'


def _as_element(node):
    if isinstance(node, (str, bytes)):
        data = node.encode('utf-8') if isinstance(node, str) else node
        try:
            return etree.fromstring(data)
        except etree.XMLSyntaxError as e:
            raise ksefError.ksefInputValidationError(f"Cannot canonicalize malformed XML: {e}")
    return node


def canonicalize(node, exclusive: bool = True) -> bytes:
    """
    Canonical XML 1.0 (without comments) of an element or an XML string.

    With exclusive=True only the namespaces visibly used by the subtree are
    rendered, which keeps the digest of a fragment stable wherever it sits.
    """
    element = _as_element(node)
    return etree.tostring(element, method='c14n', exclusive=exclusive, with_comments=False)


def exclusive_c14n(node) -> bytes:
    return canonicalize(node, exclusive=True)


def inclusive_c14n(node) -> bytes:
    return canonicalize(node, exclusive=False)
